# sandbox.py
# Sandboxed Python execution against the virtual filesystem.
#
# Code strings run with exec() in a persistent namespace whose builtins are a
# copy of the real ones with two entries replaced: open() is routed through
# the VirtualFileSystem, and __import__ serves the network mount's query module
# (`import networkfs`) plus virtual-filesystem copies of os, os.path, io and
# pathlib (fsmodules.py). stdout/stderr are accumulated into an OutputCapture
# that the caller reads and resets after every execution.
#
# This is an isolation of the filesystem view, not a security boundary.

import builtins
import contextlib
import io
import logging
import traceback
from pathlib import Path
from typing import Any

from netfs_agent.config import KNOWN_RESOURCES, Settings
from netfs_agent.fetch_bridge import SyncFetchBridge
from netfs_agent.fsmodules import build_modules
from netfs_agent.intercept import InterceptingFileSystem
from netfs_agent.models import ExecutionResult, MountConfig, OutputCapture
from netfs_agent.netfs import Fetcher, NetworkBackedFileSystem, NetworkFileSystem
from netfs_agent.vfs import FileSystem, HostFileSystem, VirtualFileSystem

OUTPUT_DIR = "/output"
MODULE_NAME = "networkfs"

logger = logging.getLogger(__name__)


class _CaptureStream(io.TextIOBase):
    """Text sink appending to one field of an OutputCapture."""

    def __init__(self, capture: OutputCapture, field: str) -> None:
        super().__init__()
        self._capture = capture
        self._field = field

    def writable(self) -> bool:
        return True

    def write(self, text: str) -> int:
        setattr(self._capture, self._field, getattr(self._capture, self._field) + text)
        return len(text)


class Sandbox:
    """
    Executes code strings with a virtual filesystem in place of the host's.

    Example:
        sandbox = Sandbox(NetworkFileSystem(SyncFetchBridge()))
        result = sandbox.execute("print(open('/network/icanhazip.com').read())")
        sandbox.dispose()
    """

    def __init__(
        self,
        network: NetworkBackedFileSystem,
        *,
        root: FileSystem | None = None,
        output_dir: str = OUTPUT_DIR,
        passthrough: dict[str, Path] | None = None,
        module_name: str = MODULE_NAME,
    ) -> None:
        self.fs = VirtualFileSystem(root)
        self.network = network
        self.output_dir = output_dir
        self.module_name = module_name

        network.mount(self.fs)
        self.fs.makedirs(output_dir, exist_ok=True)
        for mount_point, host_dir in (passthrough or {}).items():
            self.fs.mount(HostFileSystem(host_dir), mount_point)

        self.module = network.register_module(module_name)
        self.modules = build_modules(self.fs)
        self._globals = self._fresh_globals()
        self._disposed = False

    # ------------------------------------------------------------------
    # Namespace
    # ------------------------------------------------------------------

    def _import(self, name, globals=None, locals=None, fromlist=(), level=0):
        if level == 0:
            if name == self.module_name:
                return self.module
            if name in self.modules:
                # `import os.path` binds the top-level package
                if "." in name and not fromlist:
                    return self.modules[name.partition(".")[0]]
                return self.modules[name]
        return builtins.__import__(name, globals, locals, fromlist, level)

    def _fresh_globals(self) -> dict[str, Any]:
        sandbox_builtins = dict(vars(builtins))
        sandbox_builtins["open"] = self.fs.open
        sandbox_builtins["__import__"] = self._import
        return {
            "__name__": "__main__",
            "__builtins__": sandbox_builtins,
            self.module_name: self.module,
        }

    def reset(self) -> None:
        """Forget every variable defined by earlier executions."""
        self._globals = self._fresh_globals()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, code: str, capture: OutputCapture | None = None) -> ExecutionResult:
        """
        Run `code` and report what it printed.

        Exceptions raised by the code are captured into stderr with
        success=False; they never propagate to the caller. The capture
        buffers are reset before returning.
        """
        capture = capture if capture is not None else OutputCapture()
        stdout = _CaptureStream(capture, "stdout")
        stderr = _CaptureStream(capture, "stderr")

        try:
            with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(stderr):
                exec(compile(code, "<sandbox>", "exec"), self._globals)
        except SystemExit as exc:
            success = exc.code in (None, 0)
            if not success:
                capture.stderr += f"SystemExit: {exc.code}\n"
        except Exception as exc:
            capture.stderr += "".join(traceback.format_exception_only(type(exc), exc))
            success = False
        else:
            success = True

        try:
            return ExecutionResult(stdout=capture.stdout, stderr=capture.stderr, success=success)
        finally:
            capture.reset()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def dispose(self) -> None:
        """Unmount the network namespace and stop its fetch bridge."""
        if self._disposed:
            return
        self._disposed = True
        self.network.dispose()

    def __enter__(self) -> "Sandbox":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_network_fs(settings: Settings, fetcher: Fetcher | None = None) -> NetworkBackedFileSystem:
    """Pick the adapter strategy named in settings."""
    fetcher = fetcher if fetcher is not None else SyncFetchBridge(timeout=settings.fetch_timeout)
    mount = MountConfig(mount_point=settings.mount_point, scheme=settings.scheme)
    if settings.strategy == "intercept":
        if settings.restricted:
            logger.info(
                "the intercept strategy has no resource registry; any host under %s is reachable",
                mount.mount_point,
            )
        return InterceptingFileSystem(fetcher, mount)
    registry = KNOWN_RESOURCES if settings.restricted else None
    return NetworkFileSystem(fetcher, mount, registry=registry)


def build_sandbox(settings: Settings, fetcher: Fetcher | None = None) -> Sandbox:
    passthrough = {"/workspace": settings.workspace_dir} if settings.workspace_dir else None
    return Sandbox(build_network_fs(settings, fetcher), passthrough=passthrough)
