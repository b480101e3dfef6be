# netfs.py
# Network-backed filesystem, node-tree strategy.
#
# Paths under the mount point resolve lazily to NetworkNode objects. Looking
# up a file node fetches its bytes through the blocking bridge the first
# time; after that the in-memory cache is authoritative. Directories are a
# derived view: a remote path is a directory when some cached (or
# registered) path lives beneath it.
#
# Node and stream behavior lives in two explicit operation tables,
# NodeOps and StreamOps, shared by every node of a filesystem instance.

import errno
import io
import logging
import posixpath
import stat as stat_module
import time
import types
from abc import abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from netfs_agent.errors import FetchFailure, InvalidArgument, NotFound, NotMounted, ReadOnlyFilesystem
from netfs_agent.models import CacheEntry, MountConfig, StatResult
from netfs_agent.vfs import BLOCK_SIZE, DIRECTORY_SIZE, FileSystem, OpenFlags, normalize_path, split_path

if TYPE_CHECKING:
    from netfs_agent.vfs import VirtualFileSystem

logger = logging.getLogger(__name__)

S_IFREG = stat_module.S_IFREG
S_IFDIR = stat_module.S_IFDIR
FILE_MODE = S_IFREG | 0o444
DIR_MODE = S_IFDIR | 0o555


class Fetcher(Protocol):
    """What the filesystems need from the blocking fetch bridge."""

    def fetch(self, url: str) -> bytes: ...

    def shutdown(self) -> None: ...


# ---------------------------------------------------------------------------
# Shared adapter behavior
# ---------------------------------------------------------------------------


class NetworkBackedFileSystem(FileSystem):
    """
    Path mapping, cache transfer, sandbox module and disposal shared by both
    adapter strategies.

    A virtual path '<mount_point>/<remainder>' maps to '<scheme>://<remainder>'.
    """

    def __init__(self, fetcher: Fetcher, config: MountConfig | None = None) -> None:
        self.config = config or MountConfig()
        self.fetcher = fetcher
        self._vfs: "VirtualFileSystem | None" = None
        self._disposed = False

    @property
    def mount_point(self) -> str:
        return normalize_path(self.config.mount_point)

    @property
    def scheme(self) -> str:
        return self.config.scheme

    # ------------------------------------------------------------------
    # Path mapping
    # ------------------------------------------------------------------

    def is_within_mount(self, path: str) -> bool:
        path = normalize_path(path)
        if self.mount_point == "/":
            return True
        return path == self.mount_point or path.startswith(self.mount_point + "/")

    def to_remote_path(self, path: str) -> str:
        """Strip the mount prefix exactly once. '' for paths outside the mount."""
        path = normalize_path(path)
        if not self.is_within_mount(path):
            return ""
        remote = path[len(self.mount_point) :] if self.mount_point != "/" else path
        return remote.lstrip("/")

    def normalize_to_mount(self, path: str | None) -> str | None:
        """Place a relative or root-relative name under the mount point."""
        if not path:
            return None
        if path.startswith("/") and self.is_within_mount(path):
            return normalize_path(path)
        return normalize_path(f"{self.mount_point}/{path.lstrip('/')}")

    def path_to_url(self, remote_path: str) -> str:
        return f"{self.scheme}://{remote_path}"

    def url_for(self, path: str) -> str:
        """Locator for a virtual path under the mount."""
        remote = self.to_remote_path(path)
        if not remote:
            raise ValueError(f"No remote resource specified for {path}")
        return self.path_to_url(remote)

    def _fetch(self, url: str, path: str) -> bytes:
        """Fetch through the bridge, translating failures into NotFound."""
        try:
            return self.fetcher.fetch(url)
        except FetchFailure as exc:
            logger.info("fetch failed for %s (%s): %s", path, url, exc)
            raise NotFound(path, exc.message) from exc

    # ------------------------------------------------------------------
    # Cache transfer
    # ------------------------------------------------------------------

    @abstractmethod
    def is_cached(self, path: str) -> bool: ...

    @abstractmethod
    def export_cache(self) -> dict[str, bytes]:
        """Snapshot of every cached resource, keyed the way this strategy keys its cache."""

    @abstractmethod
    def import_cache(self, entries: dict[str, bytes]) -> None:
        """Replace the whole cache with `entries`."""

    @abstractmethod
    def clear_cache(self) -> None: ...

    # ------------------------------------------------------------------
    # Mounting
    # ------------------------------------------------------------------

    @abstractmethod
    def mount(self, vfs: "VirtualFileSystem") -> None: ...

    @abstractmethod
    def unmount(self, vfs: "VirtualFileSystem | None" = None) -> None: ...

    def dispose(self) -> None:
        """Unmount (ignoring 'not mounted') and shut the fetch bridge down once."""
        if self._disposed:
            return
        self._disposed = True
        try:
            self.unmount()
        except NotMounted:
            pass
        self.fetcher.shutdown()

    # ------------------------------------------------------------------
    # Sandbox module
    # ------------------------------------------------------------------

    def register_module(self, name: str = "networkfs") -> types.ModuleType:
        """
        Build the module sandboxed code imports to query the network mount.

        Queries never fetch, except `ensure` where a strategy provides it.
        """
        module = types.ModuleType(name, "Queries against the network-backed mount.")
        module.path_to_url = self._module_path_to_url
        module.is_cached = self.is_cached
        self._extend_module(module)
        return module

    def advertised_paths(self) -> list[tuple[str, str]]:
        """(path, description) pairs the agent is told about."""
        return [
            (f"{self.mount_point}/<host>/<path>", f"reads {self.scheme}://<host>/<path>."),
            (f"{self.mount_point}/icanhazip.com", "has the current IP address."),
        ]

    def _extend_module(self, module: types.ModuleType) -> None:
        pass

    def _module_path_to_url(self, path: str) -> str | None:
        target = self.normalize_to_mount(path)
        if not target:
            return None
        try:
            return self.url_for(target)
        except (ValueError, NotFound):
            return None


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class NetworkNode:
    """A lazily created filesystem node. Root has remote_path ''."""

    name: str
    mode: int
    remote_path: str
    parent: "NetworkNode | None" = None

    @property
    def is_dir(self) -> bool:
        return stat_module.S_ISDIR(self.mode)


class NetworkStream(io.RawIOBase):
    """Read-only raw stream over a materialized node."""

    def __init__(self, fs: "NetworkFileSystem", node: NetworkNode) -> None:
        super().__init__()
        self.fs = fs
        self.node = node
        self.position = 0
        self.name = node.remote_path
        self.mode = "rb"

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed file.")
        chunk = self.fs.stream_ops.read(self, len(buffer), self.position)
        count = len(chunk)
        buffer[:count] = chunk
        self.position += count
        return count

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed file.")
        return self.fs.stream_ops.llseek(self, offset, whence)

    def tell(self) -> int:
        return self.position

    def close(self) -> None:
        if not self.closed:
            self.fs.stream_ops.close(self)
        super().close()


# ---------------------------------------------------------------------------
# Operation tables
# ---------------------------------------------------------------------------


class NodeOps:
    """Node operations: attribute reporting, lookup, listing, and the
    mutations the read-only namespace refuses."""

    def __init__(self, fs: "NetworkFileSystem") -> None:
        self.fs = fs

    def getattr(self, node: NetworkNode) -> StatResult:
        now = time.time()
        if node.is_dir:
            size = DIRECTORY_SIZE
            mtime = now
        else:
            entry = self.fs.cache.get(node.remote_path) if node.remote_path else None
            size = entry.size if entry is not None else 0
            mtime = entry.fetched_at if entry is not None else now
        return StatResult(
            st_mode=node.mode,
            st_size=size,
            st_atime=now,
            st_mtime=mtime,
            st_ctime=mtime,
            st_blksize=BLOCK_SIZE,
            st_blocks=-(-size // BLOCK_SIZE),
        )

    def lookup(self, parent: NetworkNode, name: str, *, directory: bool = False) -> NetworkNode:
        """
        Resolve `name` under `parent`, materializing files on first access.

        With directory=True the caller is walking through an intermediate
        segment, so nothing is fetched.
        """
        remote_path = f"{parent.remote_path}/{name}" if parent.remote_path else name

        if remote_path in self.fs.cache and not self.fs.is_directory(remote_path):
            if directory:
                raise NotADirectoryError(errno.ENOTDIR, "Not a directory", self.fs.virtual_path(remote_path))
            return NetworkNode(name, FILE_MODE, remote_path, parent)

        if self.fs.is_directory(remote_path):
            return NetworkNode(name, DIR_MODE, remote_path, parent)

        if directory:
            if self.fs.registry is not None:
                raise NotFound(self.fs.virtual_path(remote_path))
            return NetworkNode(name, DIR_MODE, remote_path, parent)

        self.fs.materialize(remote_path)
        return NetworkNode(name, FILE_MODE, remote_path, parent)

    def readdir(self, node: NetworkNode) -> list[str]:
        """Immediate children derived from cached remote paths. O(cache size)."""
        prefix = f"{node.remote_path}/" if node.remote_path else ""
        children: set[str] = set()
        for cached_path in self.fs.cache:
            if cached_path.startswith(prefix):
                remainder = cached_path[len(prefix) :]
                if remainder:
                    children.add(remainder.split("/", 1)[0])
        return [".", "..", *sorted(children)]

    def mknod(self, path: str, mode: int = 0) -> None:
        raise ReadOnlyFilesystem(path)

    def rename(self, path: str, new_path: str) -> None:
        raise ReadOnlyFilesystem(path)

    def rmdir(self, path: str) -> None:
        raise ReadOnlyFilesystem(path)

    def unlink(self, path: str) -> None:
        raise ReadOnlyFilesystem(path)

    def setattr(self, path: str, attrs: dict[str, Any]) -> None:
        raise ReadOnlyFilesystem(path)


class StreamOps:
    """Stream operations over cached bytes."""

    def __init__(self, fs: "NetworkFileSystem") -> None:
        self.fs = fs

    def read(self, stream: NetworkStream, length: int, position: int) -> bytes:
        entry = self.fs.cache.get(stream.node.remote_path)
        if entry is None or entry.data is None:
            logger.error(
                "File %s not cached; lookup() should have fetched it.",
                stream.node.remote_path,
            )
            return b""
        end = min(entry.size, position + length)
        return entry.data[position:end]

    def llseek(self, stream: NetworkStream, offset: int, whence: int) -> int:
        entry = self.fs.cache.get(stream.node.remote_path)
        size = entry.size if entry is not None else 0

        if whence == io.SEEK_SET:
            position = offset
        elif whence == io.SEEK_CUR:
            position = stream.position + offset
        elif whence == io.SEEK_END:
            position = size + offset
        else:
            raise InvalidArgument(f"invalid whence ({whence})", stream.name)

        if position < 0:
            raise InvalidArgument(f"negative seek position {position}", stream.name)
        stream.position = position
        return position

    def close(self, stream: NetworkStream) -> None:
        pass


# ---------------------------------------------------------------------------
# NetworkFileSystem
# ---------------------------------------------------------------------------


class NetworkFileSystem(NetworkBackedFileSystem):
    """
    Read-only namespace whose files are materialized from the network.

    With `registry`, only the listed remote paths exist, each mapped to an
    exact locator; every other name is NotFound without touching the
    network.

    Example:
        fs = NetworkFileSystem(SyncFetchBridge())
        fs.mount(vfs)
        vfs.read_file("/network/icanhazip.com")   # fetches https://icanhazip.com
    """

    def __init__(
        self,
        fetcher: Fetcher,
        config: MountConfig | None = None,
        *,
        registry: dict[str, str] | None = None,
    ) -> None:
        super().__init__(fetcher, config)
        self.registry = dict(registry) if registry is not None else None
        self.cache: dict[str, CacheEntry] = {}
        self.node_ops = NodeOps(self)
        self.stream_ops = StreamOps(self)
        self.root = NetworkNode("/", DIR_MODE, "")

    # ------------------------------------------------------------------
    # Mapping and materialization
    # ------------------------------------------------------------------

    def path_to_url(self, remote_path: str) -> str:
        if self.registry is None:
            return super().path_to_url(remote_path)
        url = self.registry.get(remote_path)
        if url is None:
            raise NotFound(self.virtual_path(remote_path))
        return url

    def advertised_paths(self) -> list[tuple[str, str]]:
        if self.registry is None:
            return super().advertised_paths()
        return [(self.virtual_path(name), f"reads {url}") for name, url in self.registry.items()]

    def virtual_path(self, remote_path: str) -> str:
        return normalize_path(f"{self.mount_point}/{remote_path}")

    def is_directory(self, remote_path: str) -> bool:
        """True when some cached or registered path lies beneath `remote_path`."""
        if not remote_path:
            return True
        prefix = remote_path + "/"
        if any(key.startswith(prefix) for key in self.cache):
            return True
        return self.registry is not None and any(key.startswith(prefix) for key in self.registry)

    def materialize(self, remote_path: str) -> CacheEntry:
        """Fetch `remote_path` into the cache unless it is already there."""
        entry = self.cache.get(remote_path)
        if entry is not None:
            return entry
        virtual = self.virtual_path(remote_path)
        url = self.path_to_url(remote_path)
        data = self._fetch(url, virtual)
        entry = CacheEntry(key=remote_path, url=url, size=len(data), fetched_at=time.time(), data=data)
        self.cache[remote_path] = entry
        logger.debug("materialized %s from %s (%d bytes)", virtual, url, entry.size)
        return entry

    def preload(self, remote_path: str) -> bytes:
        """Fetch eagerly so later opens are served from the cache."""
        return self.materialize(remote_path.strip("/")).data

    def _resolve(self, path: str, *, directory: bool = False) -> NetworkNode:
        node = self.root
        parts = split_path(path)
        for index, part in enumerate(parts):
            last = index == len(parts) - 1
            node = self.node_ops.lookup(node, part, directory=directory or not last)
        return node

    # ------------------------------------------------------------------
    # FileSystem interface (paths are relative to the mount point)
    # ------------------------------------------------------------------

    def open(self, path: str, flags: OpenFlags) -> io.RawIOBase:
        if flags.writable:
            raise ReadOnlyFilesystem(self.virtual_path(path.lstrip("/")))
        node = self._resolve(path)
        if node.is_dir:
            raise IsADirectoryError(errno.EISDIR, "Is a directory", self.virtual_path(node.remote_path))
        return NetworkStream(self, node)

    def stat(self, path: str) -> StatResult:
        return self.node_ops.getattr(self._resolve(path))

    def readdir(self, path: str) -> list[str]:
        node = self._resolve(path, directory=True)
        return self.node_ops.readdir(node)

    def read(self, path: str, offset: int, length: int) -> bytes:
        """Byte slice of an already materialized file; empty past end-of-file."""
        stream = NetworkStream(self, NetworkNode(posixpath.basename(path), FILE_MODE, path.strip("/")))
        try:
            return self.stream_ops.read(stream, length, offset)
        finally:
            stream.close()

    def mkdir(self, path: str, mode: int = 0o777) -> None:
        self.node_ops.mknod(self.virtual_path(path.lstrip("/")), S_IFDIR | mode)

    def create(self, path: str, mode: int = 0o666) -> None:
        self.node_ops.mknod(self.virtual_path(path.lstrip("/")), S_IFREG | mode)

    def rename(self, old_path: str, new_path: str) -> None:
        self.node_ops.rename(
            self.virtual_path(old_path.lstrip("/")),
            self.virtual_path(new_path.lstrip("/")),
        )

    def rmdir(self, path: str) -> None:
        self.node_ops.rmdir(self.virtual_path(path.lstrip("/")))

    def unlink(self, path: str) -> None:
        self.node_ops.unlink(self.virtual_path(path.lstrip("/")))

    def setattr(self, path: str, *, mode: int | None = None, mtime: float | None = None) -> None:
        self.node_ops.setattr(self.virtual_path(path.lstrip("/")), {"mode": mode, "mtime": mtime})

    # ------------------------------------------------------------------
    # Cache transfer
    # ------------------------------------------------------------------

    def _cache_key(self, path: str) -> str:
        target = self.normalize_to_mount(path)
        return self.to_remote_path(target) if target else ""

    def is_cached(self, path: str) -> bool:
        return self._cache_key(path) in self.cache

    def export_cache(self) -> dict[str, bytes]:
        return {key: entry.data for key, entry in self.cache.items() if entry.data is not None}

    def import_cache(self, entries: dict[str, bytes]) -> None:
        self.cache.clear()
        now = time.time()
        for key, data in entries.items():
            try:
                url = self.path_to_url(key)
            except NotFound:
                url = ""
            self.cache[key] = CacheEntry(key=key, url=url, size=len(data), fetched_at=now, data=bytes(data))

    def clear_cache(self) -> None:
        self.cache.clear()

    # ------------------------------------------------------------------
    # Mounting
    # ------------------------------------------------------------------

    def mount(self, vfs: "VirtualFileSystem") -> None:
        vfs.mount(self, self.mount_point)
        self._vfs = vfs

    def unmount(self, vfs: "VirtualFileSystem | None" = None) -> None:
        vfs = vfs or self._vfs
        if vfs is None:
            raise NotMounted(self.mount_point)
        vfs.unmount(self.mount_point)
        if vfs is self._vfs:
            self._vfs = None
