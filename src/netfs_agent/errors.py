# errors.py
# Error taxonomy shared by the fetch bridge, the virtual filesystem and the
# state cache.
#
# Filesystem errors subclass OSError so sandboxed code sees ordinary
# "no such file" / "read-only file system" semantics and can handle them with
# the usual except clauses. Network errors never cross the adapter boundary.

import errno


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


class FetchFailure(Exception):
    """Raised when a remote retrieval did not succeed."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status_code: int | None = None,
        name: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.url = url
        self.status_code = status_code
        self.name = name or type(self).__name__


class FetchTimeout(FetchFailure):
    """Raised when the background fetch does not signal within the timeout."""


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------


class NotFound(FileNotFoundError):
    """A virtual path has no backing resource."""

    def __init__(self, path: str, message: str | None = None) -> None:
        super().__init__(errno.ENOENT, message or f"No such file: {path}", path)


class ReadOnlyFilesystem(OSError):
    """A mutating operation was attempted against the network namespace."""

    def __init__(self, path: str) -> None:
        super().__init__(errno.EROFS, "Read-only file system", path)


class InvalidArgument(OSError):
    """A seek would produce a negative position, or whence is unknown."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(errno.EINVAL, message, path)


class NotMounted(OSError):
    """Raised by unmount when nothing is mounted at the given point."""

    def __init__(self, mount_point: str) -> None:
        super().__init__(errno.EINVAL, "Not mounted", mount_point)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class CacheCorruption(Exception):
    """A persisted snapshot could not be parsed or validated."""


class SnapshotExists(FileExistsError):
    """A snapshot for this (task, step) has already been written."""

    def __init__(self, path: str) -> None:
        super().__init__(errno.EEXIST, "Snapshot already exists", path)
