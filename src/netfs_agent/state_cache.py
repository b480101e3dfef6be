# state_cache.py
# Durable per-step snapshots of AgentState.
#
# One pretty-printed JSON file per (task, step):
#
#   <cache_dir>/<task_id>-step-<step>.json
#
# Snapshots are append-only. A step is never written twice; a later run
# either reads the snapshot back or, after clear_cache(), recomputes it.
# Save errors propagate. Load errors are reported and read as "absent".

import json
import logging
import os
import re
from pathlib import Path

from pydantic import ValidationError

from netfs_agent import display
from netfs_agent.errors import CacheCorruption, SnapshotExists
from netfs_agent.state import AgentState

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = "agent-cache"


class StateCache:
    """
    Filesystem-backed snapshot store keyed by task id and step number.

    Example:
        cache = StateCache("agent-cache")
        cache.save_state("task-0", state.step_count, state)
        resumed = cache.load_state("task-0", 3)
    """

    def __init__(self, cache_dir: Path | str = DEFAULT_CACHE_DIR) -> None:
        self.cache_dir = Path(cache_dir)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @staticmethod
    def _check_task_id(task_id: str) -> None:
        if not task_id or "/" in task_id or "\\" in task_id or task_id in (".", ".."):
            raise ValueError(f"Invalid task id for a snapshot file name: {task_id!r}")

    def get_cache_path(self, task_id: str, step: int) -> Path:
        self._check_task_id(task_id)
        return self.cache_dir / f"{task_id}-step-{step}.json"

    def _step_pattern(self, task_id: str) -> re.Pattern[str]:
        return re.compile(rf"^{re.escape(task_id)}-step-(\d+)\.json$")

    # ------------------------------------------------------------------
    # Save / load
    # ------------------------------------------------------------------

    def save_state(self, task_id: str, step: int, state: AgentState) -> Path:
        """
        Persist `state` as the snapshot for (task_id, step).

        Raises SnapshotExists if that snapshot was already written. Any
        OSError while writing is fatal and propagates.
        """
        path = self.get_cache_path(task_id, step)
        if path.exists():
            raise SnapshotExists(str(path))

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            tmp_path.write_text(json.dumps(state.serialize(), indent=2), encoding="utf-8")
            os.replace(tmp_path, path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        display.cache_saved(str(path))
        return path

    def _read(self, path: Path) -> AgentState:
        try:
            record = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CacheCorruption(f"Unreadable snapshot {path}: {exc}") from exc
        if not isinstance(record, dict):
            raise CacheCorruption(f"Snapshot {path} is not a JSON object")
        try:
            return AgentState.deserialize(record)
        except ValidationError as exc:
            raise CacheCorruption(f"Invalid snapshot {path}: {exc}") from exc

    def load_state(self, task_id: str, step: int) -> AgentState | None:
        """The snapshot for (task_id, step), or None if absent or unusable."""
        path = self.get_cache_path(task_id, step)
        if not path.exists():
            return None
        try:
            state = self._read(path)
        except CacheCorruption as exc:
            logger.debug("discarding snapshot", exc_info=exc)
            display.cache_error(str(path), str(exc))
            return None
        display.cache_loaded(str(path))
        return state

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def list_steps(self, task_id: str) -> list[int]:
        self._check_task_id(task_id)
        if not self.cache_dir.is_dir():
            return []
        pattern = self._step_pattern(task_id)
        steps = []
        for entry in self.cache_dir.iterdir():
            match = pattern.match(entry.name)
            if match:
                steps.append(int(match.group(1)))
        return sorted(steps)

    def latest_step(self, task_id: str) -> int | None:
        steps = self.list_steps(task_id)
        return steps[-1] if steps else None

    def discard(self, task_id: str, step: int) -> bool:
        """Remove one rejected snapshot so the step can be recomputed."""
        path = self.get_cache_path(task_id, step)
        if not path.exists():
            return False
        path.unlink()
        logger.info("discarded snapshot %s", path)
        return True

    def clear_cache(self, task_id: str) -> int:
        """Delete every snapshot of `task_id`. Returns how many were removed."""
        count = 0
        for step in self.list_steps(task_id):
            self.get_cache_path(task_id, step).unlink(missing_ok=True)
            count += 1
        display.cache_cleared(task_id, count)
        return count
