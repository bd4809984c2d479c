"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> preprocess / ONNX inference

Callers waiting for a slot are suspended, not blocked. A request that cannot
get a slot within ``queue_timeout`` seconds fails with ``TimeoutError``. Work
that has started always runs to completion.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from visiontag.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time view of the pool counters."""

    active: int
    queued: int
    completed: int
    rejected: int


class InferencePool:
    """Runs blocking pipeline calls off the event loop with bounded concurrency."""

    def __init__(self, settings: Settings) -> None:
        self._slots = settings.max_concurrent
        self._queue_timeout = settings.queue_timeout
        self._semaphore = asyncio.Semaphore(self._slots)
        self._executor = ThreadPoolExecutor(
            max_workers=self._slots,
            thread_name_prefix="visiontag-worker",
        )
        self._lock = threading.Lock()
        self._active = 0
        self._queued = 0
        self._completed = 0
        self._rejected = 0

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        with self._lock:
            self._queued += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._queue_timeout)
        except TimeoutError:
            with self._lock:
                self._queued -= 1
                self._rejected += 1
            logger.warning(
                "All %d worker slots busy for %.2fs, rejecting request",
                self._slots,
                self._queue_timeout,
            )
            raise
        with self._lock:
            self._queued -= 1
            self._active += 1
        try:
            yield
        finally:
            self._semaphore.release()
            with self._lock:
                self._active -= 1
                self._completed += 1

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run ``func(*args)`` on a worker thread once a slot is free.

        Calls that raise still count as completed; only calls that never got
        a slot count as rejected.

        Raises:
            TimeoutError: If no slot frees up within the queue timeout.
        """
        async with self._slot():
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)

    def stats(self) -> PoolStats:
        with self._lock:
            return PoolStats(
                active=self._active,
                queued=self._queued,
                completed=self._completed,
                rejected=self._rejected,
            )

    @property
    def active_count(self) -> int:
        """Number of calls currently executing."""
        return self.stats().active

    @property
    def queue_depth(self) -> int:
        """Number of calls waiting for a slot."""
        return self.stats().queued

    def shutdown(self) -> None:
        """Wait for running calls and shut down the executor."""
        self._executor.shutdown(wait=True)
