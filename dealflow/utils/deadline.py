from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, TypeVar

from dealflow.utils.error_taxonomy import DeadlineExceeded

T = TypeVar("T")

logger = logging.getLogger(__name__)

_DEFAULT_POLL_INTERVAL_SECONDS = 0.05


class SafetyTimer:
    """Wall-clock budget that flips an event when it runs out."""

    def __init__(self, budget_seconds: float, *, name: str = "safety-timer") -> None:
        self.budget_seconds = budget_seconds
        self.expired = threading.Event()
        self._timer = threading.Timer(budget_seconds, self._fire)
        self._timer.name = name
        self._timer.daemon = True

    def start(self) -> "SafetyTimer":
        self._timer.start()
        return self

    def cancel(self) -> None:
        self._timer.cancel()

    def _fire(self) -> None:
        logger.warning("Safety timer fired after %.1fs", self.budget_seconds)
        self.expired.set()


def run_with_deadline(
    operation: Callable[[], T],
    *,
    timeout_seconds: float | None = None,
    cancelled: threading.Event | None = None,
    abandoned: threading.Event | None = None,
    poll_interval_seconds: float = _DEFAULT_POLL_INTERVAL_SECONDS,
    label: str = "operation",
) -> T:
    """Run operation on a worker thread and wait for it within bounds.

    Raises DeadlineExceeded when timeout_seconds passes or the cancelled
    event is set first. The worker is not killed; ``abandoned`` is set on
    the way out so a retry loop inside the operation can stop.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"deadline-{label}")
    try:
        future = executor.submit(operation)
    finally:
        executor.shutdown(wait=False)

    deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
    try:
        while True:
            if cancelled is not None and cancelled.is_set():
                raise DeadlineExceeded(f"{label} abandoned: budget expired")

            wait_for = poll_interval_seconds
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise DeadlineExceeded(
                        f"{label} timed out after {timeout_seconds:.1f}s"
                    )
                wait_for = min(wait_for, remaining)

            done, _ = wait([future], timeout=wait_for)
            if done:
                return future.result()
    finally:
        if abandoned is not None:
            abandoned.set()
