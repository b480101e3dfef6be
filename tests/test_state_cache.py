import json
from unittest.mock import patch

import pytest

from netfs_agent.errors import SnapshotExists
from netfs_agent.state import AgentState
from netfs_agent.state_cache import StateCache


@pytest.fixture
def cache(tmp_path):
    return StateCache(tmp_path / "agent-cache")


# ---------------------------------------------------------------------------
# Path Tests
# ---------------------------------------------------------------------------

def test_cache_path_layout(cache, tmp_path):
    assert cache.get_cache_path("task-0", 3) == tmp_path / "agent-cache" / "task-0-step-3.json"

@pytest.mark.parametrize("task_id", ["", "a/b", "..", "a\\b"])
def test_task_ids_with_separators_are_rejected(cache, task_id):
    with pytest.raises(ValueError):
        cache.get_cache_path(task_id, 1)

# ---------------------------------------------------------------------------
# Save / Load Tests
# ---------------------------------------------------------------------------

def test_save_then_load(cache):
    state = AgentState(messages=[{"role": "user", "content": "hi"}], step_count=1)
    path = cache.save_state("task-0", 1, state)

    assert path.exists()
    assert json.loads(path.read_text())["stepCount"] == 1
    assert not list(path.parent.glob("*.tmp"))

    loaded = cache.load_state("task-0", 1)
    assert loaded.messages == state.messages
    assert loaded.step_count == 1

def test_snapshots_are_never_overwritten(cache):
    cache.save_state("task-0", 1, AgentState(step_count=1))
    with pytest.raises(SnapshotExists):
        cache.save_state("task-0", 1, AgentState(step_count=1, done=True))
    assert cache.load_state("task-0", 1).done is False

def test_missing_snapshot_loads_as_none(cache):
    assert cache.load_state("task-0", 1) is None

def test_corrupt_snapshot_is_reported_and_treated_as_absent(cache):
    path = cache.get_cache_path("task-0", 1)
    path.parent.mkdir(parents=True)
    path.write_text("{ not json")

    with patch("netfs_agent.state_cache.display") as mock_display:
        assert cache.load_state("task-0", 1) is None
    mock_display.cache_error.assert_called_once()

def test_invalid_snapshot_shape_is_treated_as_absent(cache):
    path = cache.get_cache_path("task-0", 2)
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({"stepCount": "many", "messages": "nope"}))
    assert cache.load_state("task-0", 2) is None

    path.write_text(json.dumps([1, 2, 3]))
    assert cache.load_state("task-0", 2) is None

def test_snapshot_with_bad_base64_is_treated_as_absent(cache):
    path = cache.get_cache_path("task-0", 1)
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({"stepCount": 1, "networkCache": {"current-ip": "!!notbase64!!"}}))

    with patch("netfs_agent.state_cache.display") as mock_display:
        assert cache.load_state("task-0", 1) is None
    mock_display.cache_error.assert_called_once()

def test_save_errors_propagate(cache):
    with patch("netfs_agent.state_cache.os.replace", side_effect=OSError(28, "No space left on device")):
        with pytest.raises(OSError):
            cache.save_state("task-0", 1, AgentState(step_count=1))
    assert not list(cache.cache_dir.glob("*.tmp"))
    assert cache.load_state("task-0", 1) is None

# ---------------------------------------------------------------------------
# Housekeeping Tests
# ---------------------------------------------------------------------------

def test_list_and_latest_steps(cache):
    assert cache.list_steps("task-0") == []
    assert cache.latest_step("task-0") is None

    for step in (1, 2, 10):
        cache.save_state("task-0", step, AgentState(step_count=step))
    cache.save_state("task-01", 5, AgentState(step_count=5))

    assert cache.list_steps("task-0") == [1, 2, 10]
    assert cache.latest_step("task-0") == 10

def test_clear_cache_only_touches_one_task(cache):
    cache.save_state("task-0", 1, AgentState(step_count=1))
    cache.save_state("task-0", 2, AgentState(step_count=2))
    cache.save_state("task-1", 1, AgentState(step_count=1))

    assert cache.clear_cache("task-0") == 2
    assert cache.list_steps("task-0") == []
    assert cache.list_steps("task-1") == [1]

def test_discard_removes_a_single_snapshot(cache):
    cache.save_state("task-0", 1, AgentState(step_count=1))
    assert cache.discard("task-0", 1) is True
    assert cache.discard("task-0", 1) is False
    assert cache.load_state("task-0", 1) is None
