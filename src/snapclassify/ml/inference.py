"""Inference concurrency layer.

Architecture:
    event loop (session, API) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ONNX inference

The awaiting coroutine resumes on the event loop, so callers may mutate
loop-owned state after ``run`` returns without further synchronization.
No timeout is applied; a cancelled caller stops waiting and frees its slot,
but the worker thread runs the call to completion. ``active_count`` is
maintained by the worker thread itself, so it covers such orphaned calls
and never counts calls still pending in the executor queue.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from snapclassify.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Manages the semaphore and thread pool for ML inference."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.inference_workers)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.inference_workers,
            thread_name_prefix="onnx-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous function to the inference thread pool.

        Waits for a free slot, runs the function in the executor, then
        releases the slot.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await self._semaphore.acquire()
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, self._tracked, func, *args)
        finally:
            self._semaphore.release()

    def _tracked(self, func: Callable[..., T], *args: object) -> T:
        with self._counter_lock:
            self._active_count += 1
        try:
            return func(*args)
        finally:
            with self._counter_lock:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a free worker."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
        logger.debug("Inference pool shut down")
