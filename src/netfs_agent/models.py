# models.py
# Data contracts for the network filesystem and the durable agent loop.
# Pure schema and validation, no business logic.

import json
import stat as stat_module
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class MountConfig(BaseModel):
    """Where the network namespace is mounted and how paths become locators."""

    mount_point: str = Field(default="/network", description="Absolute mount prefix.")
    scheme: str = Field(default="https", description="Scheme prepended to remote paths.")


class CacheEntry(BaseModel):
    """A materialized network resource."""

    key: str = Field(..., description="Remote path or normalized virtual path.")
    url: str = Field(..., description="Locator the bytes were fetched from.")
    size: int = Field(..., ge=0)
    fetched_at: float = Field(..., description="Epoch seconds of the fetch.")
    data: bytes | None = Field(default=None, description="Resident bytes, if held in memory.")

    def describe(self) -> dict[str, Any]:
        """Metadata view safe to hand to sandboxed code."""
        return self.model_dump(exclude={"data"})


class StatResult(BaseModel):
    """Subset of os.stat_result reported by the virtual filesystems."""

    st_mode: int
    st_size: int = 0
    st_nlink: int = 1
    st_uid: int = 0
    st_gid: int = 0
    st_atime: float = 0.0
    st_mtime: float = 0.0
    st_ctime: float = 0.0
    st_blksize: int = 4096
    st_blocks: int = 0

    @property
    def is_dir(self) -> bool:
        return stat_module.S_ISDIR(self.st_mode)


class OutputCapture(BaseModel):
    """Text written by sandboxed code since the last reset."""

    stdout: str = ""
    stderr: str = ""

    def reset(self) -> None:
        self.stdout = ""
        self.stderr = ""


class ExecutionResult(BaseModel):
    """Outcome of one sandboxed code execution."""

    stdout: str = ""
    stderr: str = ""
    success: bool


class ToolCall(BaseModel):
    """A tool invocation requested by the reasoning model."""

    id: str
    name: str
    arguments: str = Field(default="{}", description="Raw JSON argument string.")

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode the argument string. Raises json.JSONDecodeError or ValueError."""
        value = json.loads(self.arguments or "{}", strict=False)
        if not isinstance(value, dict):
            raise ValueError(f"Tool arguments must be a JSON object, got {type(value).__name__}")
        return value


class ModelResponse(BaseModel):
    """A reasoning-model reply normalized to a stop condition plus content."""

    model_config = ConfigDict(frozen=True)

    stop_reason: Literal["end_turn", "tool_use"]
    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)

    def to_message(self) -> dict[str, Any]:
        """Render as an assistant turn for the conversation transcript."""
        message: dict[str, Any] = {"role": "assistant", "content": self.text or None}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in self.tool_calls
            ]
        return message
