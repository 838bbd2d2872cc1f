from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    stop_when_event_set,
)
from tenacity.wait import wait_base

from dealflow.utils.error_taxonomy import DeadlineExceeded, is_retryable_exception

T = TypeVar("T")

logger = logging.getLogger(__name__)

JITTER_RATIO = 0.3


@dataclass(frozen=True, slots=True)
class RetryOptions:
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0


class wait_capped_exponential_jitter(wait_base):
    """min(base * 2**attempt, max) stretched by up to +30% jitter."""

    def __init__(
        self,
        *,
        base_delay_seconds: float,
        max_delay_seconds: float,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.random_fn = random_fn

    def __call__(self, retry_state: RetryCallState) -> float:
        return compute_backoff_delay(
            attempt=retry_state.attempt_number - 1,
            base_delay_seconds=self.base_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            jitter_fraction=self.random_fn(),
        )


def compute_backoff_delay(
    *,
    attempt: int,
    base_delay_seconds: float,
    max_delay_seconds: float,
    jitter_fraction: float,
) -> float:
    capped = min(base_delay_seconds * (2**attempt), max_delay_seconds)
    return capped + capped * JITTER_RATIO * jitter_fraction


class RetryPolicy:
    def __init__(
        self,
        options: RetryOptions | None = None,
        *,
        should_retry: Callable[[Exception], bool] = is_retryable_exception,
        sleep_fn: Callable[[float], object] | None = None,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        self.options = options or RetryOptions()
        self.should_retry = should_retry
        self.sleep_fn = sleep_fn
        self.random_fn = random_fn

    def execute(
        self,
        operation: Callable[[], T],
        *,
        options: RetryOptions | None = None,
        label: str = "operation",
        on_retry: Callable[[int, float, Exception], None] | None = None,
        cancelled: threading.Event | None = None,
    ) -> T:
        """Run operation, retrying classified-transient errors with backoff.

        The last error propagates unchanged once retries are exhausted or
        when the classifier marks it fatal. Setting ``cancelled`` cuts the
        backoff short and prevents any further attempt.
        """
        effective = options or self.options

        def _before_sleep(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            error = outcome.exception() if outcome is not None else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                "Retrying %s after attempt %d in %.2fs: %s",
                label,
                retry_state.attempt_number,
                delay,
                error,
            )
            if on_retry is not None and isinstance(error, Exception):
                on_retry(retry_state.attempt_number, delay, error)

        stop = stop_after_attempt(effective.max_retries + 1)
        if cancelled is not None:
            stop = stop | stop_when_event_set(cancelled)

        sleep = self.sleep_fn
        if sleep is None:
            sleep = cancelled.wait if cancelled is not None else time.sleep

        def _attempt() -> T:
            if cancelled is not None and cancelled.is_set():
                raise DeadlineExceeded(f"{label} cancelled before next attempt")
            return operation()

        retrying = Retrying(
            stop=stop,
            wait=wait_capped_exponential_jitter(
                base_delay_seconds=effective.base_delay_seconds,
                max_delay_seconds=effective.max_delay_seconds,
                random_fn=self.random_fn,
            ),
            retry=retry_if_exception(
                lambda error: isinstance(error, Exception) and self.should_retry(error)
            ),
            sleep=sleep,
            before_sleep=_before_sleep,
            reraise=True,
        )
        return retrying(_attempt)
