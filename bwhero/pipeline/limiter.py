"""
Transcode Limiter — bounded, timed execution of codec work.

Codec calls are CPU-bound and memory-hungry. Every one goes through a
single process-wide limiter:

- at most `concurrency` calls run at once; the rest queue
- each call has a hard wall-clock timeout
- on timeout the request's CancelToken is set, so the worker gives up at
  its next stage boundary, and the caller gets TranscodeTimeout

A call that timed out keeps its slot until the worker actually returns,
so runaway codec work still counts against the limit.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Optional, TypeVar

from ..observability.metrics import metrics
from ..validation import Cancelled, TranscodeTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """Per-request cancellation flag, set on timeout or client disconnect."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, stage: str = "") -> None:
        """Raise Cancelled if the request has been abandoned."""
        if self._event.is_set():
            where = f" before {stage}" if stage else ""
            raise Cancelled(f"{self.reason or 'cancelled'}{where}")


class TranscodeLimiter:
    """Bounded worker pool with per-call timeouts."""

    def __init__(self, concurrency: int):
        self.concurrency = max(1, concurrency)
        self._slots = threading.BoundedSemaphore(self.concurrency)
        self._executor = ThreadPoolExecutor(
            max_workers=self.concurrency,
            thread_name_prefix="transcode",
        )

    def run(
        self,
        fn: Callable[..., T],
        *args,
        timeout: float,
        token: Optional[CancelToken] = None,
        label: str = "codec",
    ) -> T:
        """
        Run fn(*args) on the pool and wait at most `timeout` seconds.

        Time spent queueing for a slot counts against the timeout.

        Raises:
            TranscodeTimeout: If the call did not finish in time
            Cancelled: If the token was already set
        """
        if token is not None:
            token.check(label)

        deadline = time.monotonic() + timeout
        if not self._slots.acquire(timeout=timeout):
            raise TranscodeTimeout(f"{label}: no free transcode slot within {timeout:.0f}s")

        metrics.gauge("transcode_inflight").inc()
        try:
            future: Future = self._executor.submit(fn, *args)
        except Exception:
            self._release()
            raise
        future.add_done_callback(lambda _f: self._release())

        try:
            return future.result(timeout=max(deadline - time.monotonic(), 0.0))
        except FutureTimeout:
            future.cancel()
            if token is not None:
                token.cancel(f"{label} timed out")
            logger.warning(f"{label} exceeded {timeout:.0f}s — abandoning")
            raise TranscodeTimeout(f"{label} exceeded {timeout:.0f}s")

    def _release(self) -> None:
        metrics.gauge("transcode_inflight").dec()
        self._slots.release()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
