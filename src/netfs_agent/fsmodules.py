# fsmodules.py
# os, os.path, io and pathlib as sandboxed code sees them.
#
# Each module is a copy of the real one with its filesystem entry points
# rebound to a VirtualFileSystem, so os.stat('/network/x') materializes through
# the network adapter and os.listdir('/output') lists the in-memory artifact
# directory. The real modules are never patched; the sandbox's __import__
# hands these copies out instead.
#
# Libraries that import os for themselves (shutil, tempfile, ...) still see
# the host.

import errno
import fnmatch
import io
import os
import pathlib
import posixpath
import stat as stat_module
import types

from netfs_agent.models import StatResult
from netfs_agent.vfs import VirtualFileSystem, normalize_path


def to_stat_result(st: StatResult) -> os.stat_result:
    """Convert a virtual StatResult into the tuple type os.stat returns."""
    return os.stat_result(
        (
            st.st_mode,
            0,
            0,
            st.st_nlink,
            st.st_uid,
            st.st_gid,
            st.st_size,
            int(st.st_atime),
            int(st.st_mtime),
            int(st.st_ctime),
        ),
        {
            "st_atime": st.st_atime,
            "st_mtime": st.st_mtime,
            "st_ctime": st.st_ctime,
            "st_blksize": st.st_blksize,
            "st_blocks": st.st_blocks,
        },
    )


def _try_stat(vfs: VirtualFileSystem, path) -> StatResult | None:
    try:
        return vfs.stat(path)
    except (OSError, ValueError):
        return None


# ---------------------------------------------------------------------------
# os.scandir support
# ---------------------------------------------------------------------------


class _DirEntry:
    """What os.scandir yields, backed by the virtual filesystem."""

    def __init__(self, vfs: VirtualFileSystem, directory: str, name: str) -> None:
        self._vfs = vfs
        self.name = name
        self.path = posixpath.join(directory, name)

    def is_dir(self, *, follow_symlinks: bool = True) -> bool:
        st = _try_stat(self._vfs, self.path)
        return st is not None and stat_module.S_ISDIR(st.st_mode)

    def is_file(self, *, follow_symlinks: bool = True) -> bool:
        st = _try_stat(self._vfs, self.path)
        return st is not None and stat_module.S_ISREG(st.st_mode)

    def is_symlink(self) -> bool:
        return False

    def stat(self, *, follow_symlinks: bool = True) -> os.stat_result:
        return to_stat_result(self._vfs.stat(self.path))

    def __fspath__(self) -> str:
        return self.path

    def __repr__(self) -> str:
        return f"<DirEntry {self.name!r}>"


class _ScandirIterator:
    def __init__(self, entries: list[_DirEntry]) -> None:
        self._entries = iter(entries)

    def __iter__(self) -> "_ScandirIterator":
        return self

    def __next__(self) -> _DirEntry:
        return next(self._entries)

    def close(self) -> None:
        self._entries = iter(())

    def __enter__(self) -> "_ScandirIterator":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


# ---------------------------------------------------------------------------
# os and os.path
# ---------------------------------------------------------------------------


def build_path_module(vfs: VirtualFileSystem) -> types.ModuleType:
    module = types.ModuleType("posixpath", posixpath.__doc__)
    module.__dict__.update({k: v for k, v in vars(posixpath).items() if not k.startswith("__")})

    def exists(path) -> bool:
        return _try_stat(vfs, path) is not None

    def isfile(path) -> bool:
        st = _try_stat(vfs, path)
        return st is not None and stat_module.S_ISREG(st.st_mode)

    def isdir(path) -> bool:
        st = _try_stat(vfs, path)
        return st is not None and stat_module.S_ISDIR(st.st_mode)

    def islink(path) -> bool:
        return False

    def abspath(path) -> str:
        return normalize_path(path)

    def realpath(path, *, strict: bool = False) -> str:
        if strict:
            vfs.stat(path)
        return normalize_path(path)

    module.exists = exists
    module.lexists = exists
    module.isfile = isfile
    module.isdir = isdir
    module.islink = islink
    module.abspath = abspath
    module.realpath = realpath
    module.getsize = lambda path: vfs.stat(path).st_size
    module.getmtime = lambda path: vfs.stat(path).st_mtime
    module.getatime = lambda path: vfs.stat(path).st_atime
    module.getctime = lambda path: vfs.stat(path).st_ctime
    return module


def build_os_module(vfs: VirtualFileSystem, path_module: types.ModuleType) -> types.ModuleType:
    module = types.ModuleType("os", os.__doc__)
    module.__dict__.update({k: v for k, v in vars(os).items() if not k.startswith("__")})
    module.path = path_module

    def stat(path, *, dir_fd=None, follow_symlinks: bool = True) -> os.stat_result:
        return to_stat_result(vfs.stat(path))

    def listdir(path=".") -> list[str]:
        return vfs.listdir(path)

    def scandir(path=".") -> _ScandirIterator:
        directory = normalize_path(path)
        return _ScandirIterator([_DirEntry(vfs, directory, name) for name in vfs.listdir(directory)])

    def mkdir(path, mode: int = 0o777, *, dir_fd=None) -> None:
        vfs.mkdir(path, mode)

    def makedirs(name, mode: int = 0o777, exist_ok: bool = False) -> None:
        if exist_ok and not path_module.isdir(name) and path_module.exists(name):
            raise FileExistsError(errno.EEXIST, "File exists", os.fspath(name))
        vfs.makedirs(name, exist_ok=exist_ok)

    def unlink(path, *, dir_fd=None) -> None:
        vfs.unlink(path)

    def rmdir(path, *, dir_fd=None) -> None:
        vfs.rmdir(path)

    def rename(src, dst, *, src_dir_fd=None, dst_dir_fd=None) -> None:
        vfs.rename(src, dst)

    def walk(top, topdown: bool = True, onerror=None, followlinks: bool = False):
        top = normalize_path(top)
        try:
            names = vfs.listdir(top)
        except OSError as exc:
            if onerror is not None:
                onerror(exc)
            return
        dirs = [name for name in names if path_module.isdir(posixpath.join(top, name))]
        files = [name for name in names if name not in dirs]
        if topdown:
            yield top, dirs, files
        for name in dirs:
            yield from walk(posixpath.join(top, name), topdown, onerror, followlinks)
        if not topdown:
            yield top, dirs, files

    def open_fd(path, flags, mode: int = 0o777, *, dir_fd=None):
        raise OSError(errno.EBADF, "File descriptors are not available in the sandbox", os.fspath(path))

    module.stat = stat
    module.lstat = stat
    module.listdir = listdir
    module.scandir = scandir
    module.mkdir = mkdir
    module.makedirs = makedirs
    module.remove = unlink
    module.unlink = unlink
    module.rmdir = rmdir
    module.rename = rename
    module.replace = rename
    module.walk = walk
    module.open = open_fd
    module.getcwd = lambda: "/"
    return module


# ---------------------------------------------------------------------------
# io and pathlib
# ---------------------------------------------------------------------------


def build_io_module(vfs: VirtualFileSystem) -> types.ModuleType:
    module = types.ModuleType("io", io.__doc__)
    module.__dict__.update({k: v for k, v in vars(io).items() if not k.startswith("__")})
    module.open = vfs.open
    return module


class SandboxPath(pathlib.PurePosixPath):
    """
    PurePosixPath plus the concrete Path I/O methods, served by `_vfs`.

    build_pathlib_module() binds a subclass per VirtualFileSystem; derived
    paths (`/`, `.parent`) keep that subclass.
    """

    _vfs: VirtualFileSystem

    @classmethod
    def cwd(cls):
        return cls("/")

    @classmethod
    def home(cls):
        return cls("/")

    def absolute(self):
        return type(self)(normalize_path(self))

    def resolve(self, strict: bool = False):
        if strict:
            self._vfs.stat(self)
        return self.absolute()

    def stat(self, *, follow_symlinks: bool = True) -> os.stat_result:
        return to_stat_result(self._vfs.stat(self))

    def exists(self, *, follow_symlinks: bool = True) -> bool:
        return _try_stat(self._vfs, self) is not None

    def is_file(self) -> bool:
        st = _try_stat(self._vfs, self)
        return st is not None and stat_module.S_ISREG(st.st_mode)

    def is_dir(self) -> bool:
        st = _try_stat(self._vfs, self)
        return st is not None and stat_module.S_ISDIR(st.st_mode)

    def is_symlink(self) -> bool:
        return False

    def open(self, mode="r", buffering=-1, encoding=None, errors=None, newline=None):
        return self._vfs.open(self, mode, buffering, encoding, errors, newline)

    def read_bytes(self) -> bytes:
        with self.open("rb") as fh:
            return fh.read()

    def read_text(self, encoding=None, errors=None, newline=None) -> str:
        with self.open("r", encoding=encoding, errors=errors, newline=newline) as fh:
            return fh.read()

    def write_bytes(self, data) -> int:
        view = memoryview(data)
        with self.open("wb") as fh:
            return fh.write(view)

    def write_text(self, data, encoding=None, errors=None, newline=None) -> int:
        if not isinstance(data, str):
            raise TypeError(f"data must be str, not {type(data).__name__}")
        with self.open("w", encoding=encoding, errors=errors, newline=newline) as fh:
            return fh.write(data)

    def iterdir(self):
        for name in self._vfs.listdir(self):
            yield self / name

    def glob(self, pattern: str):
        """Non-recursive glob over this directory's entries."""
        for child in self.iterdir():
            if fnmatch.fnmatchcase(child.name, pattern):
                yield child

    def mkdir(self, mode: int = 0o777, parents: bool = False, exist_ok: bool = False) -> None:
        if parents:
            self._vfs.makedirs(self, exist_ok=exist_ok)
            return
        try:
            self._vfs.mkdir(self, mode)
        except FileExistsError:
            if not exist_ok or not self.is_dir():
                raise

    def touch(self, mode: int = 0o666, exist_ok: bool = True) -> None:
        try:
            self._vfs.create(self, mode)
        except FileExistsError:
            if not exist_ok:
                raise

    def unlink(self, missing_ok: bool = False) -> None:
        try:
            self._vfs.unlink(self)
        except FileNotFoundError:
            if not missing_ok:
                raise

    def rmdir(self) -> None:
        self._vfs.rmdir(self)

    def rename(self, target):
        self._vfs.rename(self, target)
        return type(self)(target)

    replace = rename


def build_pathlib_module(vfs: VirtualFileSystem) -> types.ModuleType:
    module = types.ModuleType("pathlib", pathlib.__doc__)
    module.__dict__.update({k: v for k, v in vars(pathlib).items() if not k.startswith("__")})
    path_class = type("Path", (SandboxPath,), {"_vfs": vfs})
    module.Path = path_class
    module.PosixPath = path_class
    return module


def build_modules(vfs: VirtualFileSystem) -> dict[str, types.ModuleType]:
    """Module table keyed by import name, ready for the sandbox's __import__."""
    path_module = build_path_module(vfs)
    return {
        "os": build_os_module(vfs, path_module),
        "os.path": path_module,
        "posixpath": path_module,
        "io": build_io_module(vfs),
        "pathlib": build_pathlib_module(vfs),
    }
