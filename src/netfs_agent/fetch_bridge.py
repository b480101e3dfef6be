# fetch_bridge.py
# Blocking fetch bridge.
#
# Sandboxed code calls open() synchronously and cannot await, but HTTP
# retrieval runs on asyncio. This module is the single place where the
# foreground thread blocks on another thread: a long-lived background thread
# owns an event loop and an httpx.AsyncClient; each fetch() posts a job to
# that loop and waits on a threading.Event until the loop deposits the
# outcome in a one-shot reply queue.
#
# Strictly one fetch in flight per caller. Job ids exist for tracing only.

import asyncio
import concurrent.futures
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any

import httpx

from netfs_agent.errors import FetchFailure, FetchTimeout

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass
class _FetchJob:
    id: int
    url: str
    reply: "queue.Queue[dict[str, Any]]"
    signal: threading.Event


def _normalize_error(error: BaseException | None, url: str) -> dict[str, Any]:
    """Flatten an exception into a plain dict that can cross the thread boundary."""
    if error is None:
        return {"message": f"Unknown error fetching {url}"}
    return {
        "message": str(error) or f"Unknown error fetching {url}",
        "name": type(error).__name__,
    }


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------


class SyncFetchBridge:
    """
    Synchronous facade over an asynchronous HTTP client.

    Example:
        bridge = SyncFetchBridge(timeout=10)
        data = bridge.fetch("https://icanhazip.com/")
        bridge.shutdown()
    """

    def __init__(
        self,
        *,
        timeout: float | None = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        startup_timeout: float = 5.0,
    ) -> None:
        self._timeout = timeout
        self._transport = transport
        self._next_job_id = 1
        self._closed = False
        self._client: httpx.AsyncClient | None = None

        self._loop = asyncio.new_event_loop()
        self._loop_ready = threading.Event()
        self._thread = threading.Thread(target=self._run_loop, name="fetch-bridge", daemon=True)
        self._thread.start()
        self._loop_ready.wait(timeout=startup_timeout)

    # ------------------------------------------------------------------
    # Background thread
    # ------------------------------------------------------------------

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._client = httpx.AsyncClient(transport=self._transport, follow_redirects=True)
        self._loop_ready.set()
        try:
            self._loop.run_forever()
        finally:
            pending = asyncio.all_tasks(self._loop)
            for task in pending:
                task.cancel()
            if pending:
                self._loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            self._loop.close()

    def _dispatch(self, job: _FetchJob) -> None:
        self._loop.create_task(self._handle(job))

    async def _handle(self, job: _FetchJob) -> None:
        try:
            response = await self._client.get(job.url)
        except Exception as exc:
            outcome = {"id": job.id, "status": "error", "error": _normalize_error(exc, job.url)}
        else:
            if response.is_success:
                outcome = {"id": job.id, "status": "ok", "data": response.content}
            else:
                outcome = {
                    "id": job.id,
                    "status": "error",
                    "error": {
                        "message": f"HTTP {response.status_code} {response.reason_phrase}",
                        "name": "HTTPStatusError",
                        "status_code": response.status_code,
                    },
                }
        job.reply.put_nowait(outcome)
        job.signal.set()

    async def _aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Foreground API
    # ------------------------------------------------------------------

    @property
    def next_job_id(self) -> int:
        return self._next_job_id

    @property
    def closed(self) -> bool:
        return self._closed

    def fetch(self, url: str) -> bytes:
        """
        Retrieve `url` and return its body, blocking the calling thread.

        Raises FetchFailure on non-2xx status, transport error or a missing
        payload, and FetchTimeout if the background thread does not answer
        within the configured timeout.
        """
        if not url:
            raise ValueError("fetch() requires a non-empty locator.")
        if self._closed:
            raise FetchFailure(f"Fetch bridge is shut down; cannot fetch {url}", url=url)

        job = _FetchJob(
            id=self._next_job_id,
            url=url,
            reply=queue.Queue(maxsize=1),
            signal=threading.Event(),
        )
        self._next_job_id += 1
        logger.debug("fetch job %d -> %s", job.id, url)

        self._loop.call_soon_threadsafe(self._dispatch, job)

        if not job.signal.wait(self._timeout):
            raise FetchTimeout(f"Timed out after {self._timeout}s fetching {url}", url=url)

        try:
            payload = job.reply.get_nowait()
        except queue.Empty:
            payload = None

        if not payload:
            raise FetchFailure(f"Fetch worker returned no payload for {url}", url=url)

        if payload["status"] != "ok":
            error = payload.get("error") or {}
            raise FetchFailure(
                error.get("message") or f"Failed to fetch {url}",
                url=url,
                status_code=error.get("status_code"),
                name=error.get("name"),
            )

        logger.debug("fetch job %d <- %d bytes", job.id, len(payload["data"]))
        return payload["data"]

    def shutdown(self) -> None:
        """Close the HTTP client and stop the background thread. Idempotent."""
        if self._closed:
            return
        self._closed = True

        if self._loop.is_running():
            future = asyncio.run_coroutine_threadsafe(self._aclose(), self._loop)
            try:
                future.result(timeout=5.0)
            except concurrent.futures.TimeoutError:
                logger.warning("fetch bridge: HTTP client did not close within 5s")
            self._loop.call_soon_threadsafe(self._loop.stop)

        self._thread.join(timeout=5.0)

    def __enter__(self) -> "SyncFetchBridge":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()
