"""Retry loop for action handlers, driven by a declarative ``RetryPolicy``.

Policies map onto tenacity strategies: ``fixed`` is ``wait_fixed``, ``linear``
is ``wait_incrementing`` and ``exponential`` is ``wait_exponential``, all capped
by ``maxDelay``. Policy delays are milliseconds; tenacity works in seconds.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
    wait_incrementing,
    wait_none,
)
from tenacity.wait import wait_base

from .models import RetryPolicy

T = TypeVar("T")


class RetriesExhausted(Exception):
    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")


def backoff_wait(policy: RetryPolicy) -> wait_base:
    """The tenacity wait strategy for ``policy``."""

    base = policy.backoff_delay / 1000.0
    cap = {} if policy.max_delay is None else {"max": policy.max_delay / 1000.0}
    if policy.backoff_strategy == "linear":
        return wait_incrementing(start=base, increment=base, **cap)
    if policy.backoff_strategy == "exponential":
        return wait_exponential(multiplier=base, exp_base=2, **cap)
    return wait_fixed(min(base, cap.get("max", base)))


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy | None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> tuple[T, int]:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    Returns the result and the number of attempts made. Raises
    ``RetriesExhausted`` wrapping the last error otherwise.
    """

    attempts = 0

    def attempt() -> T:
        nonlocal attempts
        attempts += 1
        return operation()

    def before_sleep(state: RetryCallState) -> None:
        if on_retry is None or state.outcome is None or state.next_action is None:
            return
        error = state.outcome.exception()
        if error is not None:
            on_retry(state.attempt_number, error, state.next_action.sleep)

    max_retries = policy.max_retries if policy is not None else 0
    retrying = Retrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=backoff_wait(policy) if policy is not None else wait_none(),
        sleep=sleep,
        before_sleep=before_sleep,
    )
    try:
        result = retrying(attempt)
    except RetryError as exc:
        last_error = exc.last_attempt.exception()
        raise RetriesExhausted(attempts, last_error) from last_error
    return result, attempts
