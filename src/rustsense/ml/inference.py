"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> preprocess + ONNX inference

Decoding, resizing and inference are CPU-bound, so the whole pipeline runs in
the executor and the event loop stays responsive. Requests beyond the
semaphore limit wait up to ``queue_timeout`` seconds, then get 503.

The pool also keeps outcome counters and timing for the health endpoint, and
``timed_stage`` reports how long each pipeline stage took.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from rustsense.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@contextmanager
def timed_stage(stage: str, timings: dict[str, float] | None = None) -> Iterator[None]:
    """Log the duration of a pipeline stage, recording it into ``timings`` if given."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        if timings is not None:
            timings[stage] = elapsed
        logger.debug("Stage %s took %.1f ms", stage, elapsed * 1000)


@dataclass(frozen=True)
class PoolStats:
    """Snapshot of pool activity since startup."""

    active: int
    queued: int
    completed: int
    failed: int
    rejected: int
    mean_wait_ms: float
    mean_run_ms: float


class InferencePool:
    """Bounds concurrent pipeline runs and accounts for their outcomes."""

    def __init__(self, settings: Settings) -> None:
        self._timeout = settings.queue_timeout
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="severity-inference",
        )
        self._lock = threading.Lock()
        self._active = 0
        self._queued = 0
        self._completed = 0
        self._failed = 0
        self._rejected = 0
        self._wait_total = 0.0
        self._run_total = 0.0

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run a synchronous function on the thread pool once a slot is free.

        Raises:
            TimeoutError: If no slot frees up within the queue timeout.
        """
        queued_at = time.perf_counter()
        with self._lock:
            self._queued += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._timeout)
        except TimeoutError:
            with self._lock:
                self._queued -= 1
                self._rejected += 1
            logger.warning("Inference queue full; rejected after %.1fs", self._timeout)
            raise

        started_at = time.perf_counter()
        with self._lock:
            self._queued -= 1
            self._active += 1
            self._wait_total += started_at - queued_at

        succeeded = False
        try:
            result = await asyncio.get_running_loop().run_in_executor(self._executor, func, *args)
            succeeded = True
            return result
        finally:
            self._semaphore.release()
            elapsed = time.perf_counter() - started_at
            with self._lock:
                self._active -= 1
                self._run_total += elapsed
                if succeeded:
                    self._completed += 1
                else:
                    self._failed += 1
            logger.debug(
                "Job %s %s in %.1f ms (waited %.1f ms)",
                getattr(func, "__qualname__", func),
                "finished" if succeeded else "failed",
                elapsed * 1000,
                (started_at - queued_at) * 1000,
            )

    @property
    def active_count(self) -> int:
        """Number of currently running pipeline tasks."""
        with self._lock:
            return self._active

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a semaphore slot."""
        with self._lock:
            return self._queued

    def stats(self) -> PoolStats:
        with self._lock:
            admitted = self._completed + self._failed + self._active
            finished = self._completed + self._failed
            return PoolStats(
                active=self._active,
                queued=self._queued,
                completed=self._completed,
                failed=self._failed,
                rejected=self._rejected,
                mean_wait_ms=self._wait_total * 1000 / admitted if admitted else 0.0,
                mean_run_ms=self._run_total * 1000 / finished if finished else 0.0,
            )

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
