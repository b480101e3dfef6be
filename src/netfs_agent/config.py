# config.py
# Runtime configuration, loaded from the environment (and a .env file).
#
# Swap NETFS_MODEL for any OpenRouter-supported model.
# https://openrouter.ai/models

import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "anthropic/claude-3.5-haiku"

# Remote paths reachable under the mount when the namespace is restricted.
KNOWN_RESOURCES: dict[str, str] = {
    "current-ip": "https://icanhazip.com/",
}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Everything the entry points need to wire a run together."""

    api_key: str | None = None
    model: str = DEFAULT_MODEL
    base_url: str = OPENROUTER_BASE_URL
    max_tokens: int = Field(default=8000, gt=0)

    max_steps: int = Field(default=10, ge=0)
    use_cache: bool = True
    clear_cache: bool = False
    cache_dir: Path = Path("agent-cache")
    output_dir: Path = Path("output")

    mount_point: str = "/network"
    scheme: str = "https"
    fetch_timeout: float = Field(default=30.0, gt=0)
    strategy: Literal["node-tree", "intercept"] = "node-tree"
    restricted: bool = True
    workspace_dir: Path | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        """Load configuration from environment variables."""
        load_dotenv()
        workspace = os.getenv("NETFS_WORKSPACE_DIR")
        return cls(
            api_key=os.getenv("OPENROUTER_API_KEY"),
            model=os.getenv("NETFS_MODEL", DEFAULT_MODEL),
            base_url=os.getenv("NETFS_BASE_URL", OPENROUTER_BASE_URL),
            max_tokens=int(os.getenv("NETFS_MAX_TOKENS", "8000")),
            max_steps=int(os.getenv("NETFS_MAX_STEPS", "10")),
            use_cache=_env_bool("NETFS_USE_CACHE", True),
            clear_cache=_env_bool("NETFS_CLEAR_CACHE", False),
            cache_dir=Path(os.getenv("NETFS_CACHE_DIR", "agent-cache")),
            output_dir=Path(os.getenv("NETFS_OUTPUT_DIR", "output")),
            mount_point=os.getenv("NETFS_MOUNT_POINT", "/network"),
            scheme=os.getenv("NETFS_SCHEME", "https"),
            fetch_timeout=float(os.getenv("NETFS_FETCH_TIMEOUT", "30")),
            strategy=os.getenv("NETFS_STRATEGY", "node-tree"),
            restricted=_env_bool("NETFS_RESTRICTED", True),
            workspace_dir=Path(workspace) if workspace else None,
        )
