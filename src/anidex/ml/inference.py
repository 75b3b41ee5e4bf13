"""Background execution for classification.

Requests wait for one of N slots (asyncio.Semaphore) and then run on a
matching ThreadPoolExecutor, so model inference never runs on the event
loop. A request that cannot get a slot within ANIDEX_QUEUE_TIMEOUT fails
with TimeoutError (HTTP 503). A started call is never cancelled.
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

    from anidex.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

THREAD_NAME_PREFIX = "anidex-classify"


@dataclass(frozen=True)
class PoolStats:
    active: int
    queued: int


class InferencePool:
    """Bounded worker pool for blocking inference calls."""

    def __init__(self, settings: Settings) -> None:
        self._slots = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix=THREAD_NAME_PREFIX,
        )
        self._queue_timeout = settings.queue_timeout
        self._counts_lock = threading.Lock()
        self._active = 0
        self._queued = 0

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run ``func(*args)`` on a worker thread once a slot is free.

        Raises:
            TimeoutError: If no slot frees up within the queue timeout.
        """
        async with self._slot():
            return await asyncio.get_running_loop().run_in_executor(self._executor, func, *args)

    def stats(self) -> PoolStats:
        with self._counts_lock:
            return PoolStats(active=self._active, queued=self._queued)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        self._adjust(queued=1)
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self._queue_timeout)
        except TimeoutError:
            logger.warning("No inference slot free after %.1fs, rejecting request", self._queue_timeout)
            raise
        finally:
            self._adjust(queued=-1)

        self._adjust(active=1)
        try:
            yield
        finally:
            self._slots.release()
            self._adjust(active=-1)

    def _adjust(self, *, active: int = 0, queued: int = 0) -> None:
        with self._counts_lock:
            self._active += active
            self._queued += queued
