import base64
import json
from unittest.mock import MagicMock, patch

import pytest
from pydantic import ValidationError

from netfs_agent.state import AgentState
from netfs_agent.vfs import VirtualFileSystem


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def sample_state() -> AgentState:
    return AgentState(
        messages=[{"role": "user", "content": "What is my IP?"}],
        step_count=2,
        network_cache={"current-ip": b64(b"203.0.113.7\n")},
        output_files={"ip.txt": b64(b"203.0.113.7")},
    )


# ---------------------------------------------------------------------------
# Serialization Tests
# ---------------------------------------------------------------------------

def test_serialize_uses_record_keys():
    record = sample_state().serialize()
    assert set(record) == {
        "messages",
        "stepCount",
        "outputCapture",
        "networkCache",
        "outputFiles",
        "done",
        "metadata",
    }
    assert set(record["metadata"]) == {"taskId", "createdAt", "lastModified"}
    assert record["outputCapture"] == {"stdout": "", "stderr": ""}
    json.dumps(record)

def test_round_trip_preserves_everything_but_last_modified():
    state = sample_state()
    state.metadata.task_id = "task-7"
    state.mark_done()
    record = state.serialize()

    restored = AgentState.deserialize(json.loads(json.dumps(record)))
    assert restored.messages == state.messages
    assert restored.step_count == 2
    assert restored.network_cache == state.network_cache
    assert restored.output_files == state.output_files
    assert restored.done is True
    assert restored.metadata.task_id == "task-7"
    assert restored.metadata.created_at == state.metadata.created_at

def test_serialize_stamps_last_modified():
    state = AgentState()
    with patch("netfs_agent.state.time.time", return_value=1_700_000_000.5):
        record = state.serialize()
    assert record["metadata"]["lastModified"] == 1_700_000_000_500

def test_deserialize_defaults_missing_fields():
    restored = AgentState.deserialize({"messages": [{"role": "user", "content": "hi"}]})
    assert restored.step_count == 0
    assert restored.network_cache == {}
    assert restored.output_files == {}
    assert restored.done is False
    assert restored.output_capture.stdout == ""
    assert restored.metadata.task_id is None

def test_deserialize_treats_nulls_as_missing():
    restored = AgentState.deserialize({"stepCount": 3, "metadata": None, "outputFiles": None})
    assert restored.step_count == 3
    assert restored.output_files == {}
    assert restored.metadata.created_at > 0

def test_deserialize_rejects_undecodable_payloads():
    with pytest.raises(ValidationError):
        AgentState.deserialize({"networkCache": {"current-ip": "!!notbase64!!"}})
    with pytest.raises(ValidationError):
        AgentState.deserialize({"outputFiles": {"ip.txt": "caf\u00e9"}})

def test_clone_shares_no_mutable_state():
    state = sample_state()
    clone = state.clone()
    clone.messages.append({"role": "assistant", "content": "..."})
    clone.messages[0]["content"] = "changed"
    clone.network_cache["other"] = "eA=="
    clone.output_capture.stdout = "x"
    clone.metadata.task_id = "other"

    assert len(state.messages) == 1
    assert state.messages[0]["content"] == "What is my IP?"
    assert "other" not in state.network_cache
    assert state.output_capture.stdout == ""
    assert state.metadata.task_id is None

def test_advance_and_mark_done():
    state = AgentState()
    assert state.advance() == 1
    assert state.advance() == 2
    state.mark_done()
    assert state.done is True

# ---------------------------------------------------------------------------
# Network Cache Capture Tests
# ---------------------------------------------------------------------------

def test_capture_network_cache_encodes_bytes():
    network = MagicMock()
    network.export_cache.return_value = {"current-ip": b"\x00\xffbinary"}
    state = AgentState()
    state.capture_network_cache(network)
    assert state.network_cache == {"current-ip": b64(b"\x00\xffbinary")}

def test_restore_network_cache_decodes_bytes():
    network = MagicMock()
    sample_state().restore_network_cache(network)
    network.import_cache.assert_called_once_with({"current-ip": b"203.0.113.7\n"})

# ---------------------------------------------------------------------------
# Output File Capture Tests
# ---------------------------------------------------------------------------

def test_capture_output_files_skips_directories():
    fs = VirtualFileSystem()
    fs.makedirs("/output/nested")
    fs.write_file("/output/picture.png", b"\x89PNG")
    fs.write_file("/output/nested/ignored.txt", b"x")

    state = AgentState()
    state.capture_output_files(fs)
    assert state.output_files == {"picture.png": b64(b"\x89PNG")}

def test_capture_without_output_directory_is_empty():
    state = sample_state()
    state.capture_output_files(VirtualFileSystem())
    assert state.output_files == {}

def test_capture_reports_unreadable_files_and_continues():
    fs = MagicMock()
    fs.isdir.side_effect = lambda path: path == "/output"
    fs.listdir.return_value = ["bad.bin", "good.bin"]

    def read_file(path):
        if path.endswith("bad.bin"):
            raise PermissionError(13, "denied", path)
        return b"ok"

    fs.read_file.side_effect = read_file

    state = AgentState()
    with patch("netfs_agent.state.display") as mock_display:
        state.capture_output_files(fs)
    assert state.output_files == {"good.bin": b64(b"ok")}
    mock_display.output_file_error.assert_called_once()

def test_restore_output_files_writes_into_output_dir():
    fs = VirtualFileSystem()
    sample_state().restore_output_files(fs)
    assert fs.read_file("/output/ip.txt") == b"203.0.113.7"

def test_restore_output_files_reports_bad_encoding():
    fs = VirtualFileSystem()
    state = AgentState(output_files={"ok.txt": b64(b"fine")})
    state.output_files["broken.txt"] = "not base64!"
    with patch("netfs_agent.state.display") as mock_display:
        state.restore_output_files(fs)
    assert fs.read_file("/output/ok.txt") == b"fine"
    assert not fs.exists("/output/broken.txt")
    mock_display.output_file_error.assert_called_once()
