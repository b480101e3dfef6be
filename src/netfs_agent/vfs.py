# vfs.py
# Virtual filesystem layer seen by sandboxed code.
#
# Every filesystem access from the sandbox goes through VirtualFileSystem,
# a mount table that routes a path to one FileSystem implementation:
#
#   MemoryFileSystem: writable in-memory tree (sandbox root, /output)
#   HostFileSystem: passthrough to a directory on the host
#   NetworkFileSystem: network-backed node tree      (netfs.py)
#   InterceptingFileSystem: network-backed root wrapper   (intercept.py)
#
# Nothing here patches builtins.open or os.stat; the sandbox is handed
# VirtualFileSystem.open as its open().

import errno
import io
import os
import posixpath
import stat as stat_module
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from netfs_agent.errors import InvalidArgument, NotFound, NotMounted
from netfs_agent.models import StatResult

BLOCK_SIZE = 4096
DIRECTORY_SIZE = 4096


# ---------------------------------------------------------------------------
# Paths and modes
# ---------------------------------------------------------------------------


def normalize_path(path: str | os.PathLike) -> str:
    """Absolute, normalized POSIX path. Relative paths resolve against '/'."""
    path = os.fsdecode(os.fspath(path))
    normalized = posixpath.normpath(posixpath.join("/", path))
    # normpath keeps a leading '//' (POSIX implementation-defined root)
    return "/" + normalized.lstrip("/")


def split_path(path: str) -> list[str]:
    return [part for part in normalize_path(path).split("/") if part]


@dataclass(frozen=True)
class OpenFlags:
    """Decoded open() mode."""

    readable: bool
    writable: bool
    append: bool = False
    create: bool = False
    truncate: bool = False
    exclusive: bool = False
    binary: bool = False
    mode: str = "r"

    @property
    def write_only(self) -> bool:
        return self.writable and not self.readable

    @property
    def raw_mode(self) -> str:
        """Binary mode string suitable for io.FileIO."""
        if self.append:
            letter = "a"
        elif self.exclusive:
            letter = "x"
        elif self.truncate:
            letter = "w"
        else:
            letter = "r"
        return letter + ("+" if "+" in self.mode else "") + "b"


def parse_mode(mode: str) -> OpenFlags:
    """Validate an open() mode string the way the built-in open does."""
    if not isinstance(mode, str):
        raise TypeError(f"open() argument 'mode' must be str, not {type(mode).__name__}")
    chars = set(mode)
    if not chars <= set("rwxabt+") or len(mode) != len(chars):
        raise ValueError(f"invalid mode: {mode!r}")

    primaries = chars & set("rwxa")
    if len(primaries) != 1:
        raise ValueError("must have exactly one of create/read/write/append mode")
    if "b" in chars and "t" in chars:
        raise ValueError("can't have text and binary mode at once")

    primary = primaries.pop()
    plus = "+" in chars
    return OpenFlags(
        readable=primary == "r" or plus,
        writable=primary != "r" or plus,
        append=primary == "a",
        create=primary in "wxa",
        truncate=primary == "w",
        exclusive=primary == "x",
        binary="b" in chars,
        mode=mode,
    )


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class FileSystem(ABC):
    """
    Operations every mounted filesystem supports.

    Paths are absolute within the filesystem itself: a filesystem mounted at
    /network receives '/a/b' for the virtual path '/network/a/b'.
    """

    @abstractmethod
    def open(self, path: str, flags: OpenFlags) -> io.RawIOBase: ...

    @abstractmethod
    def stat(self, path: str) -> StatResult: ...

    @abstractmethod
    def readdir(self, path: str) -> list[str]:
        """Directory entries including '.' and '..'."""

    @abstractmethod
    def mkdir(self, path: str, mode: int = 0o777) -> None: ...

    @abstractmethod
    def create(self, path: str, mode: int = 0o666) -> None: ...

    @abstractmethod
    def rename(self, old_path: str, new_path: str) -> None: ...

    @abstractmethod
    def rmdir(self, path: str) -> None: ...

    @abstractmethod
    def unlink(self, path: str) -> None: ...

    @abstractmethod
    def setattr(self, path: str, *, mode: int | None = None, mtime: float | None = None) -> None: ...


def makedirs(fs: FileSystem, path: str) -> None:
    """mkdir -p against any FileSystem."""
    current = ""
    for part in split_path(path):
        current = f"{current}/{part}"
        try:
            fs.mkdir(current)
        except FileExistsError:
            continue


# ---------------------------------------------------------------------------
# In-memory filesystem
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class _MemoryNode:
    mode: int
    data: bytearray | None = None
    children: dict[str, "_MemoryNode"] | None = None
    mtime: float = field(default_factory=time.time)

    @property
    def is_dir(self) -> bool:
        return self.children is not None


class _MemoryFile(io.RawIOBase):
    """Raw stream over a _MemoryNode's byte buffer."""

    def __init__(self, node: _MemoryNode, flags: OpenFlags, name: str) -> None:
        super().__init__()
        self._node = node
        self._flags = flags
        self._position = len(node.data) if flags.append else 0
        self.name = name
        self.mode = flags.mode

    def readable(self) -> bool:
        return self._flags.readable

    def writable(self) -> bool:
        return self._flags.writable

    def seekable(self) -> bool:
        return True

    def _check_open(self) -> None:
        if self.closed:
            raise ValueError("I/O operation on closed file.")

    def readinto(self, buffer) -> int:
        self._check_open()
        if not self._flags.readable:
            raise io.UnsupportedOperation("read")
        data = self._node.data
        chunk = data[self._position : self._position + len(buffer)]
        count = len(chunk)
        buffer[:count] = chunk
        self._position += count
        return count

    def write(self, payload) -> int:
        self._check_open()
        if not self._flags.writable:
            raise io.UnsupportedOperation("write")
        payload = bytes(payload)
        data = self._node.data
        if self._flags.append:
            self._position = len(data)
        if self._position > len(data):
            data.extend(b"\x00" * (self._position - len(data)))
        data[self._position : self._position + len(payload)] = payload
        self._position += len(payload)
        self._node.mtime = time.time()
        return len(payload)

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        self._check_open()
        if whence == io.SEEK_SET:
            position = offset
        elif whence == io.SEEK_CUR:
            position = self._position + offset
        elif whence == io.SEEK_END:
            position = len(self._node.data) + offset
        else:
            raise InvalidArgument(f"invalid whence ({whence})", self.name)
        if position < 0:
            raise InvalidArgument(f"negative seek position {position}", self.name)
        self._position = position
        return position

    def tell(self) -> int:
        self._check_open()
        return self._position

    def truncate(self, size: int | None = None) -> int:
        self._check_open()
        if not self._flags.writable:
            raise io.UnsupportedOperation("truncate")
        size = self._position if size is None else size
        del self._node.data[size:]
        self._node.mtime = time.time()
        return size


class MemoryFileSystem(FileSystem):
    """Writable in-memory tree. The sandbox's default root."""

    def __init__(self) -> None:
        self._root = _MemoryNode(mode=stat_module.S_IFDIR | 0o755, children={})

    def _lookup(self, path: str) -> _MemoryNode:
        node = self._root
        for part in split_path(path):
            if not node.is_dir:
                raise NotADirectoryError(errno.ENOTDIR, "Not a directory", path)
            child = node.children.get(part)
            if child is None:
                raise NotFound(path)
            node = child
        return node

    def _parent(self, path: str) -> tuple[_MemoryNode, str]:
        parts = split_path(path)
        if not parts:
            raise PermissionError(errno.EPERM, "Operation not permitted on root", path)
        parent = self._lookup("/" + "/".join(parts[:-1]))
        if not parent.is_dir:
            raise NotADirectoryError(errno.ENOTDIR, "Not a directory", path)
        return parent, parts[-1]

    def open(self, path: str, flags: OpenFlags) -> io.RawIOBase:
        parent, name = self._parent(path)
        node = parent.children.get(name)
        if node is None:
            if not flags.create:
                raise NotFound(path)
            node = _MemoryNode(mode=stat_module.S_IFREG | 0o644, data=bytearray())
            parent.children[name] = node
        elif flags.exclusive:
            raise FileExistsError(errno.EEXIST, "File exists", path)
        if node.is_dir:
            raise IsADirectoryError(errno.EISDIR, "Is a directory", path)
        if flags.truncate:
            del node.data[:]
            node.mtime = time.time()
        return _MemoryFile(node, flags, path)

    def stat(self, path: str) -> StatResult:
        node = self._lookup(path)
        size = DIRECTORY_SIZE if node.is_dir else len(node.data)
        return StatResult(
            st_mode=node.mode,
            st_size=size,
            st_atime=node.mtime,
            st_mtime=node.mtime,
            st_ctime=node.mtime,
            st_blocks=-(-size // BLOCK_SIZE),
        )

    def readdir(self, path: str) -> list[str]:
        node = self._lookup(path)
        if not node.is_dir:
            raise NotADirectoryError(errno.ENOTDIR, "Not a directory", path)
        return [".", "..", *node.children]

    def mkdir(self, path: str, mode: int = 0o777) -> None:
        parent, name = self._parent(path)
        if name in parent.children:
            raise FileExistsError(errno.EEXIST, "File exists", path)
        parent.children[name] = _MemoryNode(mode=stat_module.S_IFDIR | (mode & 0o7777), children={})

    def create(self, path: str, mode: int = 0o666) -> None:
        parent, name = self._parent(path)
        if name in parent.children:
            raise FileExistsError(errno.EEXIST, "File exists", path)
        parent.children[name] = _MemoryNode(mode=stat_module.S_IFREG | (mode & 0o7777), data=bytearray())

    def rename(self, old_path: str, new_path: str) -> None:
        old_parent, old_name = self._parent(old_path)
        node = old_parent.children.get(old_name)
        if node is None:
            raise NotFound(old_path)
        new_parent, new_name = self._parent(new_path)
        existing = new_parent.children.get(new_name)
        if existing is not None and existing.is_dir != node.is_dir:
            raise IsADirectoryError(errno.EISDIR, "Is a directory", new_path)
        del old_parent.children[old_name]
        new_parent.children[new_name] = node

    def rmdir(self, path: str) -> None:
        parent, name = self._parent(path)
        node = parent.children.get(name)
        if node is None:
            raise NotFound(path)
        if not node.is_dir:
            raise NotADirectoryError(errno.ENOTDIR, "Not a directory", path)
        if node.children:
            raise OSError(errno.ENOTEMPTY, "Directory not empty", path)
        del parent.children[name]

    def unlink(self, path: str) -> None:
        parent, name = self._parent(path)
        node = parent.children.get(name)
        if node is None:
            raise NotFound(path)
        if node.is_dir:
            raise IsADirectoryError(errno.EISDIR, "Is a directory", path)
        del parent.children[name]

    def setattr(self, path: str, *, mode: int | None = None, mtime: float | None = None) -> None:
        node = self._lookup(path)
        if mode is not None:
            node.mode = stat_module.S_IFMT(node.mode) | (mode & 0o7777)
        if mtime is not None:
            node.mtime = mtime


# ---------------------------------------------------------------------------
# Host passthrough
# ---------------------------------------------------------------------------


class HostFileSystem(FileSystem):
    """Passthrough to a host directory. Paths cannot escape the root."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()

    def _host(self, path: str) -> Path:
        target = (self.root / normalize_path(path).lstrip("/")).resolve()
        if target != self.root and self.root not in target.parents:
            raise PermissionError(errno.EACCES, "Path escapes the passthrough root", path)
        return target

    def open(self, path: str, flags: OpenFlags) -> io.RawIOBase:
        return io.FileIO(self._host(path), flags.raw_mode)

    def stat(self, path: str) -> StatResult:
        result = os.stat(self._host(path))
        return StatResult(
            st_mode=result.st_mode,
            st_size=result.st_size,
            st_nlink=result.st_nlink,
            st_uid=result.st_uid,
            st_gid=result.st_gid,
            st_atime=result.st_atime,
            st_mtime=result.st_mtime,
            st_ctime=result.st_ctime,
            st_blocks=-(-result.st_size // BLOCK_SIZE),
        )

    def readdir(self, path: str) -> list[str]:
        return [".", "..", *sorted(os.listdir(self._host(path)))]

    def mkdir(self, path: str, mode: int = 0o777) -> None:
        os.mkdir(self._host(path), mode)

    def create(self, path: str, mode: int = 0o666) -> None:
        os.close(os.open(self._host(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, mode))

    def rename(self, old_path: str, new_path: str) -> None:
        os.rename(self._host(old_path), self._host(new_path))

    def rmdir(self, path: str) -> None:
        os.rmdir(self._host(path))

    def unlink(self, path: str) -> None:
        os.unlink(self._host(path))

    def setattr(self, path: str, *, mode: int | None = None, mtime: float | None = None) -> None:
        target = self._host(path)
        if mode is not None:
            os.chmod(target, mode)
        if mtime is not None:
            os.utime(target, (mtime, mtime))


# ---------------------------------------------------------------------------
# Mount table
# ---------------------------------------------------------------------------


class VirtualFileSystem:
    """
    Routes virtual paths to mounted filesystems.

    Paths outside every mount go to `root`. The longest matching mount point
    wins. `open` follows the calling contract of the built-in open().
    """

    def __init__(self, root: FileSystem | None = None) -> None:
        self.root: FileSystem = root if root is not None else MemoryFileSystem()
        self._mounts: dict[str, FileSystem] = {}

    # ------------------------------------------------------------------
    # Mounting
    # ------------------------------------------------------------------

    @property
    def mounts(self) -> dict[str, FileSystem]:
        return dict(self._mounts)

    def mount(self, fs: FileSystem, mount_point: str) -> None:
        """Mount `fs`, replacing any stale mount at the same point."""
        mount_point = normalize_path(mount_point)
        if mount_point == "/":
            raise ValueError("Cannot mount over '/'; replace VirtualFileSystem.root instead.")
        try:
            self.unmount(mount_point)
        except NotMounted:
            pass
        makedirs(self.root, mount_point)
        self._mounts[mount_point] = fs

    def unmount(self, mount_point: str) -> None:
        mount_point = normalize_path(mount_point)
        if self._mounts.pop(mount_point, None) is None:
            raise NotMounted(mount_point)

    def resolve(self, path: str | os.PathLike) -> tuple[FileSystem, str]:
        """Return (filesystem, path within that filesystem)."""
        path = normalize_path(path)
        for mount_point in sorted(self._mounts, key=len, reverse=True):
            if path == mount_point:
                return self._mounts[mount_point], "/"
            if path.startswith(mount_point + "/"):
                return self._mounts[mount_point], path[len(mount_point) :]
        return self.root, path

    # ------------------------------------------------------------------
    # open()
    # ------------------------------------------------------------------

    def open(
        self,
        file,
        mode: str = "r",
        buffering: int = -1,
        encoding: str | None = None,
        errors: str | None = None,
        newline: str | None = None,
        closefd: bool = True,
        opener=None,
    ):
        if isinstance(file, int):
            raise OSError(errno.EBADF, "File descriptors are not available in the sandbox")
        if not closefd or opener is not None:
            raise ValueError("closefd and opener are not supported in the sandbox")

        flags = parse_mode(mode)
        if flags.binary and (encoding is not None or errors is not None or newline is not None):
            raise ValueError("binary mode doesn't take an encoding, errors or newline argument")

        path = normalize_path(file)
        fs, inner = self.resolve(path)
        raw = fs.open(inner, flags)
        raw.name = path

        if buffering == 0:
            if not flags.binary:
                raise ValueError("can't have unbuffered text I/O")
            return raw

        if flags.readable and flags.writable:
            buffer = io.BufferedRandom(raw)
        elif flags.writable:
            buffer = io.BufferedWriter(raw)
        else:
            buffer = io.BufferedReader(raw)

        if flags.binary:
            return buffer

        text = io.TextIOWrapper(
            buffer,
            encoding=encoding or "utf-8",
            errors=errors,
            newline=newline,
            line_buffering=buffering == 1,
        )
        text.mode = mode
        return text

    # ------------------------------------------------------------------
    # Path operations
    # ------------------------------------------------------------------

    def stat(self, path: str) -> StatResult:
        fs, inner = self.resolve(path)
        return fs.stat(inner)

    def exists(self, path: str) -> bool:
        try:
            self.stat(path)
        except FileNotFoundError:
            return False
        return True

    def isdir(self, path: str) -> bool:
        try:
            return self.stat(path).is_dir
        except FileNotFoundError:
            return False

    def readdir(self, path: str) -> list[str]:
        fs, inner = self.resolve(path)
        return fs.readdir(inner)

    def listdir(self, path: str) -> list[str]:
        return [name for name in self.readdir(path) if name not in (".", "..")]

    def mkdir(self, path: str, mode: int = 0o777) -> None:
        fs, inner = self.resolve(path)
        fs.mkdir(inner, mode)

    def makedirs(self, path: str, exist_ok: bool = False) -> None:
        current = ""
        for part in split_path(path):
            current = f"{current}/{part}"
            try:
                self.mkdir(current)
            except FileExistsError:
                if current == normalize_path(path) and not exist_ok:
                    raise

    def create(self, path: str, mode: int = 0o666) -> None:
        fs, inner = self.resolve(path)
        fs.create(inner, mode)

    def rename(self, old_path: str, new_path: str) -> None:
        old_fs, old_inner = self.resolve(old_path)
        new_fs, new_inner = self.resolve(new_path)
        if old_fs is not new_fs:
            raise OSError(errno.EXDEV, "Invalid cross-device link", old_path)
        old_fs.rename(old_inner, new_inner)

    def rmdir(self, path: str) -> None:
        fs, inner = self.resolve(path)
        fs.rmdir(inner)

    def unlink(self, path: str) -> None:
        fs, inner = self.resolve(path)
        fs.unlink(inner)

    def setattr(self, path: str, *, mode: int | None = None, mtime: float | None = None) -> None:
        fs, inner = self.resolve(path)
        fs.setattr(inner, mode=mode, mtime=mtime)

    def read_file(self, path: str) -> bytes:
        with self.open(path, "rb") as fh:
            return fh.read()

    def write_file(self, path: str, data: bytes) -> None:
        with self.open(path, "wb") as fh:
            fh.write(data)
