"""Bridge from async callers to the synchronous classifier.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> CustomClassifier

Callers wait at most 5s for a slot. An optional per-call timeout races the
prediction against a timer. A late result is discarded when it arrives, and
the abandoned call keeps its slot until the worker is free again.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from tmclassifier.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class InferencePool:
    """Runs classifier calls on worker threads with bounded concurrency."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="tmclassifier-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object, timeout: float | None = None) -> T:
        """Run ``func(*args)`` on the thread pool.

        A worker thread cannot be interrupted. When ``timeout`` expires the
        caller gets TimeoutError, but the slot stays taken and the call stays
        counted in :attr:`active_count` until the worker actually returns.

        Args:
            func: Synchronous callable, typically a classifier method.
            *args: Positional arguments for ``func``.
            timeout: Seconds to wait for the result once running. None waits
                indefinitely.

        Raises:
            TimeoutError: If no slot frees up within 5s, or the result does
                not arrive within ``timeout``.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=SEMAPHORE_TIMEOUT_SECONDS)
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            future = asyncio.get_running_loop().run_in_executor(self._executor, func, *args)
        except BaseException:
            self._release_slot()
            raise
        future.add_done_callback(self._on_worker_done)

        # shield: the worker thread cannot be interrupted, only abandoned
        if timeout is None:
            return await asyncio.shield(future)
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
        except TimeoutError:
            logger.warning("Inference exceeded %.2fs; discarding late result", timeout)
            raise

    def _release_slot(self) -> None:
        self._semaphore.release()
        with self._counter_lock:
            self._active_count -= 1

    def _on_worker_done(self, future: asyncio.Future[object]) -> None:
        # runs before any awaiting caller resumes
        self._release_slot()
        if not future.cancelled() and future.exception() is not None:
            logger.debug("Inference failed: %s", future.exception())

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
