# state.py
# The execution state of one agent run: everything needed to resume it.
#
# A snapshot holds the conversation, the step counter, the captured output
# pair, the network cache and the /output artifacts, all as JSON-safe values
# (bytes are base64). The record layout uses camelCase keys:
#
#   {messages, stepCount, outputCapture: {stdout, stderr},
#    networkCache: {key: base64}, outputFiles: {name: base64}, done,
#    metadata: {taskId, createdAt, lastModified}}
#
# Timestamps are epoch milliseconds.

import base64
import posixpath
import time
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from netfs_agent import display
from netfs_agent.models import OutputCapture

if TYPE_CHECKING:
    from netfs_agent.netfs import NetworkBackedFileSystem
    from netfs_agent.vfs import VirtualFileSystem

OUTPUT_DIR = "/output"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _decode(value: str) -> bytes:
    return base64.b64decode(value, validate=True)


class StateMetadata(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    task_id: str | None = None
    created_at: int = Field(default_factory=_now_ms)
    last_modified: int = Field(default_factory=_now_ms)


class AgentState(BaseModel):
    """
    Snapshot-able state of a durable agent run.

    step_count only ever grows by one per completed step, and done is never
    cleared once set.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    messages: list[dict[str, Any]] = Field(default_factory=list)
    step_count: int = Field(default=0, ge=0)
    output_capture: OutputCapture = Field(default_factory=OutputCapture)
    network_cache: dict[str, str] = Field(default_factory=dict)
    output_files: dict[str, str] = Field(default_factory=dict)
    done: bool = False
    metadata: StateMetadata = Field(default_factory=StateMetadata)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # Older records may carry explicit nulls; treat them as missing.
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data

    @field_validator("network_cache", "output_files")
    @classmethod
    def _check_base64(cls, value: dict[str, str]) -> dict[str, str]:
        for key, encoded in value.items():
            try:
                _decode(encoded)
            except ValueError as exc:
                raise ValueError(f"{key!r} is not valid base64: {exc}") from exc
        return value

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def serialize(self) -> dict[str, Any]:
        """JSON-safe record. Stamps metadata.lastModified."""
        self.metadata.last_modified = _now_ms()
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def deserialize(cls, record: dict[str, Any]) -> "AgentState":
        """Build a state from a record, defaulting every missing field."""
        return cls.model_validate(record)

    def clone(self) -> "AgentState":
        """Deep copy; mutating the clone never affects this state."""
        return self.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def advance(self) -> int:
        self.step_count += 1
        return self.step_count

    def mark_done(self) -> None:
        self.done = True

    # ------------------------------------------------------------------
    # Network cache
    # ------------------------------------------------------------------

    def capture_network_cache(self, network: "NetworkBackedFileSystem") -> None:
        self.network_cache = {key: _encode(data) for key, data in network.export_cache().items()}

    def restore_network_cache(self, network: "NetworkBackedFileSystem") -> None:
        """Replace the adapter cache with this snapshot's entries."""
        network.import_cache({key: _decode(value) for key, value in self.network_cache.items()})

    # ------------------------------------------------------------------
    # Output artifacts
    # ------------------------------------------------------------------

    def capture_output_files(self, fs: "VirtualFileSystem", output_dir: str = OUTPUT_DIR) -> None:
        """Record the top-level files of `output_dir`. Subdirectories are skipped."""
        files: dict[str, str] = {}
        if fs.isdir(output_dir):
            for name in fs.listdir(output_dir):
                path = posixpath.join(output_dir, name)
                try:
                    if fs.isdir(path):
                        continue
                    files[name] = _encode(fs.read_file(path))
                except OSError as exc:
                    display.output_file_error(name, exc.strerror or str(exc))
        self.output_files = files

    def restore_output_files(self, fs: "VirtualFileSystem", output_dir: str = OUTPUT_DIR) -> None:
        fs.makedirs(output_dir, exist_ok=True)
        for name, value in self.output_files.items():
            try:
                fs.write_file(posixpath.join(output_dir, name), _decode(value))
            except (OSError, ValueError) as exc:
                display.output_file_error(name, str(exc))
