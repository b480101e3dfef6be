# intercept.py
# Network-backed filesystem, interception strategy.
#
# Instead of mounting a separate node tree, InterceptingFileSystem takes the
# place of the sandbox's root filesystem and wraps it. open() and stat() on a
# path under the mount point first materialize the resource into the wrapped
# (delegate) filesystem as an ordinary file, then delegate. Every other path
# goes to the delegate untouched, so its arguments, return values and errors
# are exactly the delegate's.
#
# The cache holds metadata keyed by normalized virtual path; the bytes live in
# the delegate. An entry whose materialized file has disappeared is treated
# as absent and re-fetched.

import io
import logging
import posixpath
import time
import types
from typing import TYPE_CHECKING, Any

from netfs_agent.errors import NotMounted, ReadOnlyFilesystem
from netfs_agent.models import CacheEntry, MountConfig, StatResult
from netfs_agent.netfs import Fetcher, NetworkBackedFileSystem
from netfs_agent.vfs import FileSystem, OpenFlags, makedirs, normalize_path, parse_mode

if TYPE_CHECKING:
    from netfs_agent.vfs import VirtualFileSystem

logger = logging.getLogger(__name__)


class InterceptingFileSystem(NetworkBackedFileSystem):
    """
    Root filesystem wrapper that fetches paths under the mount on demand.

    Example:
        fs = InterceptingFileSystem(SyncFetchBridge())
        fs.mount(vfs)                                  # wraps vfs.root
        vfs.read_file("/network/icanhazip.com/get")    # https://icanhazip.com/get
    """

    def __init__(
        self,
        fetcher: Fetcher,
        config: MountConfig | None = None,
        *,
        delegate: FileSystem | None = None,
    ) -> None:
        super().__init__(fetcher, config)
        self.cache: dict[str, CacheEntry] = {}
        self._delegate: FileSystem | None = None
        if delegate is not None:
            self._attach(delegate)

    @property
    def delegate(self) -> FileSystem:
        if self._delegate is None:
            raise RuntimeError("InterceptingFileSystem is not attached to a filesystem.")
        return self._delegate

    def _attach(self, delegate: FileSystem) -> None:
        self._delegate = delegate
        if self.mount_point != "/":
            makedirs(delegate, self.mount_point)

    # ------------------------------------------------------------------
    # Mounting
    # ------------------------------------------------------------------

    def mount(self, vfs: "VirtualFileSystem") -> None:
        """Wrap `vfs.root`. Re-mounting first removes the stale wrapper."""
        if vfs.root is self:
            self.unmount(vfs)
        self._attach(vfs.root)
        vfs.root = self
        self._vfs = vfs

    def unmount(self, vfs: "VirtualFileSystem | None" = None) -> None:
        vfs = vfs or self._vfs
        if vfs is None or vfs.root is not self:
            raise NotMounted(self.mount_point)
        vfs.root = self.delegate
        if vfs is self._vfs:
            self._vfs = None

    # ------------------------------------------------------------------
    # Materialization
    # ------------------------------------------------------------------

    @staticmethod
    def should_fetch_for_open(flags: OpenFlags) -> bool:
        # read-write counts as a mutation of the namespace, not a read
        return flags.readable and not flags.writable

    def _file_exists(self, path: str) -> bool:
        try:
            return not self.delegate.stat(path).is_dir
        except FileNotFoundError:
            return False

    def _is_directory(self, path: str) -> bool:
        try:
            return self.delegate.stat(path).is_dir
        except FileNotFoundError:
            return False

    def _ensure_parent_directories(self, path: str) -> None:
        dirname = posixpath.dirname(path)
        if dirname in ("", "/", self.mount_point):
            return
        try:
            self.delegate.stat(dirname)
        except FileNotFoundError:
            makedirs(self.delegate, dirname)

    def _write(self, path: str, data: bytes) -> None:
        with self.delegate.open(path, parse_mode("wb")) as raw:
            view = memoryview(data)
            while view:
                written = raw.write(view)
                view = view[written:]

    def ensure(self, path: str) -> CacheEntry | None:
        """
        Make sure the resource behind `path` is materialized.

        Returns None for paths outside the mount or without a remote part.
        Raises NotFound when the fetch fails.
        """
        fs_path = self.normalize_to_mount(path)
        if not fs_path or not self.is_within_mount(fs_path):
            return None

        remote_path = self.to_remote_path(fs_path)
        if not remote_path:
            return None

        entry = self.cache.get(fs_path)
        if entry is not None and self._file_exists(fs_path):
            return entry

        url = self.path_to_url(remote_path)
        data = self._fetch(url, fs_path)

        self._ensure_parent_directories(fs_path)
        self._write(fs_path, data)
        stat = self.delegate.stat(fs_path)
        entry = CacheEntry(key=fs_path, url=url, size=len(data), fetched_at=stat.st_mtime or time.time())
        self.cache[fs_path] = entry
        logger.debug("materialized %s from %s (%d bytes)", fs_path, url, entry.size)
        return entry

    def invalidate(self, path: str) -> None:
        """Drop a cached resource so the next access fetches it again."""
        fs_path = self.normalize_to_mount(path)
        if not fs_path:
            return
        self.cache.pop(fs_path, None)
        if self._file_exists(fs_path):
            self.delegate.unlink(fs_path)

    # ------------------------------------------------------------------
    # FileSystem interface (absolute virtual paths)
    # ------------------------------------------------------------------

    def open(self, path: str, flags: OpenFlags) -> io.RawIOBase:
        if self.is_within_mount(path):
            if not self.should_fetch_for_open(flags):
                raise ReadOnlyFilesystem(normalize_path(path))
            if not self._is_directory(path):
                self.ensure(path)
        return self.delegate.open(path, flags)

    def stat(self, path: str) -> StatResult:
        if self.is_within_mount(path) and not self._is_directory(path):
            self.ensure(path)
        return self.delegate.stat(path)

    def readdir(self, path: str) -> list[str]:
        return self.delegate.readdir(path)

    def _refuse_under_mount(self, *paths: str) -> None:
        for path in paths:
            if self.is_within_mount(path):
                raise ReadOnlyFilesystem(normalize_path(path))

    def mkdir(self, path: str, mode: int = 0o777) -> None:
        self._refuse_under_mount(path)
        self.delegate.mkdir(path, mode)

    def create(self, path: str, mode: int = 0o666) -> None:
        self._refuse_under_mount(path)
        self.delegate.create(path, mode)

    def rename(self, old_path: str, new_path: str) -> None:
        self._refuse_under_mount(old_path, new_path)
        self.delegate.rename(old_path, new_path)

    def rmdir(self, path: str) -> None:
        self._refuse_under_mount(path)
        self.delegate.rmdir(path)

    def unlink(self, path: str) -> None:
        self._refuse_under_mount(path)
        self.delegate.unlink(path)

    def setattr(self, path: str, *, mode: int | None = None, mtime: float | None = None) -> None:
        self._refuse_under_mount(path)
        self.delegate.setattr(path, mode=mode, mtime=mtime)

    # ------------------------------------------------------------------
    # Cache transfer
    # ------------------------------------------------------------------

    def is_cached(self, path: str) -> bool:
        fs_path = self.normalize_to_mount(path)
        return fs_path in self.cache and self._file_exists(fs_path)

    def export_cache(self) -> dict[str, bytes]:
        exported: dict[str, bytes] = {}
        for fs_path in self.cache:
            if not self._file_exists(fs_path):
                continue
            with self.delegate.open(fs_path, parse_mode("rb")) as raw:
                exported[fs_path] = raw.readall()
        return exported

    def import_cache(self, entries: dict[str, bytes]) -> None:
        self.cache.clear()
        for fs_path, data in entries.items():
            fs_path = normalize_path(fs_path)
            if not self.is_within_mount(fs_path):
                logger.warning("skipping cache entry outside the mount: %s", fs_path)
                continue
            self._ensure_parent_directories(fs_path)
            self._write(fs_path, bytes(data))
            self.cache[fs_path] = CacheEntry(
                key=fs_path,
                url=self.url_for(fs_path),
                size=len(data),
                fetched_at=time.time(),
            )

    def clear_cache(self) -> None:
        self.cache.clear()

    # ------------------------------------------------------------------
    # Sandbox module
    # ------------------------------------------------------------------

    def _extend_module(self, module: types.ModuleType) -> None:
        module.ensure = self._module_ensure
        module.stat = self._module_stat

    def _module_ensure(self, path: str) -> dict[str, Any] | None:
        entry = self.ensure(path)
        return entry.describe() if entry is not None else None

    def _module_stat(self, path: str) -> dict[str, Any] | None:
        fs_path = self.normalize_to_mount(path)
        if not fs_path:
            return None
        try:
            stats = self.delegate.stat(fs_path)
        except FileNotFoundError:
            return None
        return {"path": fs_path, "size": stats.st_size, "timestamp": stats.st_mtime}
