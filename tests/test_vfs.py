import errno
import io

import pytest

from netfs_agent.errors import InvalidArgument, NotMounted
from netfs_agent.vfs import (
    HostFileSystem,
    MemoryFileSystem,
    VirtualFileSystem,
    normalize_path,
    parse_mode,
    split_path,
)

# ---------------------------------------------------------------------------
# Path and Mode Parsing Tests
# ---------------------------------------------------------------------------

def test_normalize_path_resolves_relative_and_dots():
    assert normalize_path("a/b") == "/a/b"
    assert normalize_path("/a/./b/../c/") == "/a/c"
    assert normalize_path("//network//x") == "/network/x"
    assert normalize_path("/../..") == "/"

def test_split_path_drops_empty_segments():
    assert split_path("/network/a//b/") == ["network", "a", "b"]
    assert split_path("/") == []

@pytest.mark.parametrize(
    "mode, readable, writable, write_only",
    [
        ("r", True, False, False),
        ("rb", True, False, False),
        ("w", False, True, True),
        ("a", False, True, True),
        ("x", False, True, True),
        ("r+", True, True, False),
        ("w+b", True, True, False),
    ],
)
def test_parse_mode_flags(mode, readable, writable, write_only):
    flags = parse_mode(mode)
    assert flags.readable is readable
    assert flags.writable is writable
    assert flags.write_only is write_only

@pytest.mark.parametrize("mode", ["", "rw", "rr", "q", "rbt", "+"])
def test_parse_mode_rejects_invalid(mode):
    with pytest.raises(ValueError):
        parse_mode(mode)

def test_raw_mode_for_host_files():
    assert parse_mode("r").raw_mode == "rb"
    assert parse_mode("w+").raw_mode == "w+b"
    assert parse_mode("a").raw_mode == "ab"
    assert parse_mode("x").raw_mode == "xb"

# ---------------------------------------------------------------------------
# VirtualFileSystem over MemoryFileSystem Tests
# ---------------------------------------------------------------------------

def test_text_round_trip_through_open():
    vfs = VirtualFileSystem()
    with vfs.open("/notes.txt", "w", encoding="utf-8") as fh:
        fh.write("héllo\nworld\n")
    with vfs.open("/notes.txt") as fh:
        assert fh.readlines() == ["héllo\n", "world\n"]

def test_binary_append_and_seek():
    vfs = VirtualFileSystem()
    vfs.write_file("/data.bin", b"abc")
    with vfs.open("/data.bin", "ab") as fh:
        fh.write(b"def")
    with vfs.open("/data.bin", "rb") as fh:
        fh.seek(2)
        assert fh.read(2) == b"cd"
        assert fh.seek(-1, io.SEEK_END) == 5
        assert fh.read() == b"f"

def test_open_missing_file_raises_file_not_found():
    vfs = VirtualFileSystem()
    with pytest.raises(FileNotFoundError):
        vfs.open("/nope.txt")

def test_exclusive_create_refuses_existing_file():
    vfs = VirtualFileSystem()
    vfs.write_file("/once", b"1")
    with pytest.raises(FileExistsError):
        vfs.open("/once", "x")

def test_open_directory_raises():
    vfs = VirtualFileSystem()
    vfs.mkdir("/dir")
    with pytest.raises(IsADirectoryError):
        vfs.open("/dir")

def test_binary_mode_rejects_encoding():
    vfs = VirtualFileSystem()
    with pytest.raises(ValueError):
        vfs.open("/x", "wb", encoding="utf-8")

def test_negative_seek_is_invalid():
    vfs = VirtualFileSystem()
    vfs.write_file("/f", b"xyz")
    with vfs.open("/f", "rb", buffering=0) as raw:
        with pytest.raises(InvalidArgument) as excinfo:
            raw.seek(-10)
    assert excinfo.value.errno == errno.EINVAL

def test_directory_operations():
    vfs = VirtualFileSystem()
    vfs.makedirs("/a/b/c")
    vfs.makedirs("/a/b/c", exist_ok=True)
    with pytest.raises(FileExistsError):
        vfs.makedirs("/a/b/c")

    vfs.write_file("/a/b/file.txt", b"1")
    assert vfs.listdir("/a/b") == ["c", "file.txt"]
    assert vfs.isdir("/a/b/c")
    assert not vfs.isdir("/a/b/file.txt")

    vfs.rename("/a/b/file.txt", "/a/moved.txt")
    assert vfs.read_file("/a/moved.txt") == b"1"
    assert not vfs.exists("/a/b/file.txt")

    vfs.unlink("/a/moved.txt")
    vfs.rmdir("/a/b/c")
    assert vfs.listdir("/a/b") == []

def test_rmdir_non_empty_fails():
    vfs = VirtualFileSystem()
    vfs.makedirs("/full")
    vfs.write_file("/full/x", b"")
    with pytest.raises(OSError) as excinfo:
        vfs.rmdir("/full")
    assert excinfo.value.errno == errno.ENOTEMPTY

def test_setattr_updates_mode_and_mtime():
    vfs = VirtualFileSystem()
    vfs.write_file("/f", b"")
    vfs.setattr("/f", mode=0o600, mtime=1234.0)
    stats = vfs.stat("/f")
    assert stats.st_mode & 0o7777 == 0o600
    assert stats.st_mtime == 1234.0

# ---------------------------------------------------------------------------
# Mount Table Tests
# ---------------------------------------------------------------------------

def test_mount_routes_by_longest_prefix():
    vfs = VirtualFileSystem()
    outer, inner = MemoryFileSystem(), MemoryFileSystem()
    vfs.mount(outer, "/mnt")
    vfs.mount(inner, "/mnt/deep")

    assert vfs.resolve("/mnt/deep/x") == (inner, "/x")
    assert vfs.resolve("/mnt/other") == (outer, "/other")
    assert vfs.resolve("/elsewhere") == (vfs.root, "/elsewhere")

def test_mount_is_idempotent_and_unmount_reports_missing():
    vfs = VirtualFileSystem()
    first, second = MemoryFileSystem(), MemoryFileSystem()
    vfs.mount(first, "/m")
    vfs.mount(second, "/m")
    assert vfs.mounts == {"/m": second}

    vfs.unmount("/m")
    with pytest.raises(NotMounted):
        vfs.unmount("/m")

def test_rename_across_mounts_is_cross_device():
    vfs = VirtualFileSystem()
    vfs.mount(MemoryFileSystem(), "/m")
    vfs.write_file("/m/a", b"1")
    with pytest.raises(OSError) as excinfo:
        vfs.rename("/m/a", "/b")
    assert excinfo.value.errno == errno.EXDEV

# ---------------------------------------------------------------------------
# Host Passthrough Tests
# ---------------------------------------------------------------------------

def test_host_passthrough_reads_and_writes(tmp_path):
    (tmp_path / "existing.txt").write_text("from host")
    vfs = VirtualFileSystem()
    vfs.mount(HostFileSystem(tmp_path), "/workspace")

    with vfs.open("/workspace/existing.txt") as fh:
        assert fh.read() == "from host"

    with vfs.open("/workspace/new.txt", "w") as fh:
        fh.write("from sandbox")
    assert (tmp_path / "new.txt").read_text() == "from sandbox"
    assert vfs.listdir("/workspace") == ["existing.txt", "new.txt"]

def test_host_passthrough_cannot_escape_root(tmp_path):
    fs = HostFileSystem(tmp_path / "root")
    (tmp_path / "root").mkdir()
    # normalize_path already clamps '..' at '/', so escapes need a symlink
    (tmp_path / "outside.txt").write_text("secret")
    (tmp_path / "root" / "link").symlink_to(tmp_path / "outside.txt")
    with pytest.raises(PermissionError):
        fs.stat("/link")
