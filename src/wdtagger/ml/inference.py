"""Bounded execution of tagging requests.

Decoding, normalization and the ONNX forward pass are CPU/GPU-bound and
synchronous, so the API hands each request to a worker thread. A semaphore
sized to ``max_concurrent`` caps how many images are tagged at once; a request
that cannot get a slot within the wait limit is rejected (the API answers 503)
instead of piling up behind a busy model.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from wdtagger.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SLOT_WAIT_SECONDS: float = 5.0


class InferencePool:
    """Worker threads plus an admission semaphore for tagging jobs."""

    def __init__(self, settings: Settings, timeout: float = SLOT_WAIT_SECONDS) -> None:
        workers = settings.max_concurrent
        self._size = workers
        self._timeout = timeout
        self._slots = asyncio.Semaphore(workers)
        self._workers = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tagger-inference")
        self._lock = threading.Lock()
        self._running = 0
        self._waiting = 0

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run ``func(*args)`` on a worker thread once a slot is free.

        Whatever ``func`` raises (invalid image, catalog mismatch, runtime
        failure) reaches the caller unchanged.

        Raises:
            TimeoutError: No slot freed up within the wait limit.
        """
        await self._acquire_slot()
        self._adjust(running=1)
        try:
            return await asyncio.get_running_loop().run_in_executor(self._workers, func, *args)
        finally:
            self._slots.release()
            self._adjust(running=-1)

    async def _acquire_slot(self) -> None:
        self._adjust(waiting=1)
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self._timeout)
        except TimeoutError:
            logger.warning("All %d tagging slots busy for %.1fs, rejecting request", self._size, self._timeout)
            raise
        finally:
            self._adjust(waiting=-1)

    def _adjust(self, *, running: int = 0, waiting: int = 0) -> None:
        with self._lock:
            self._running += running
            self._waiting += waiting

    @property
    def active_count(self) -> int:
        """Images currently being tagged."""
        with self._lock:
            return self._running

    @property
    def queue_depth(self) -> int:
        """Requests waiting for a free slot."""
        with self._lock:
            return self._waiting

    def shutdown(self) -> None:
        """Wait for in-flight jobs, then stop the worker threads."""
        self._workers.shutdown(wait=True)
