"""Retry policy shared by the synchronization and mutation paths.

A :class:`RetryPolicy` bundles the three decisions every retry loop makes: how
many attempts are allowed, how long to wait between them, and which errors are
worth retrying. The loop itself is delegated to :mod:`tenacity`.

Synchronization uses an incrementing schedule (``backoff * attempt``) for rate
limit and transient failures. Withdrawals and restores use :data:`NO_RETRY` so a
failure is surfaced to the caller instead of risking a double withdrawal.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Tuple, Type, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt

from . import log
from .errors import RateLimitError, TransientRemoteError


T = TypeVar("T")

RETRYABLE_REMOTE_ERRORS: Tuple[Type[BaseException], ...] = (RateLimitError, TransientRemoteError)


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0
    log.warning(
        "Attempt %d of %s failed (%s); retrying in %.1fs",
        retry_state.attempt_number,
        getattr(retry_state.fn, "__name__", "call"),
        error,
        delay,
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget, backoff schedule and retryable-error predicate.

    Attributes:
        max_attempts (int): Total number of calls, first one included.
        backoff_seconds (float): Base delay. The wait after the n-th failed
            attempt is ``backoff_seconds * n``.
        retry_on (tuple[type[BaseException], ...]): Errors that trigger another
            attempt. Anything else propagates immediately.
    """

    max_attempts: int = 1
    backoff_seconds: float = 0.0
    retry_on: Tuple[Type[BaseException], ...] = RETRYABLE_REMOTE_ERRORS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must be zero or positive")

    def delay_for(self, attempt_number: int, error: BaseException | None = None) -> float:
        """Return the wait applied after ``attempt_number`` failed.

        A ``Retry-After`` hint carried by a :class:`RateLimitError` wins when it
        is longer than the scheduled delay, but never exceeds
        :attr:`max_delay`.
        """

        delay = self.backoff_seconds * attempt_number
        hint = getattr(error, "retry_after", None)
        if hint is not None and hint > delay:
            return max(delay, min(float(hint), self.max_delay))
        return delay

    @property
    def max_delay(self) -> float:
        """Longest single wait the policy accepts: ``backoff_seconds * max_attempts``."""

        return self.backoff_seconds * self.max_attempts

    def _wait(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        return self.delay_for(retry_state.attempt_number, error)

    def call(self, func: Callable[..., T], *args: Any, sleep: Callable[[float], None] = time.sleep, **kwargs: Any) -> T:
        """Invoke ``func`` under this policy and return its result.

        The last error is re-raised unchanged once the attempt budget is spent,
        so callers see the same exception types with or without retries.
        """

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type(self.retry_on),
            sleep=sleep,
            before_sleep=_log_retry,
            reraise=True,
        )
        return retrying(func, *args, **kwargs)


NO_RETRY = RetryPolicy(max_attempts=1)


def sync_policy(backoff_seconds: float, max_retries: int) -> RetryPolicy:
    """Build the policy used for per-variant fetches during synchronization."""

    return RetryPolicy(max_attempts=max_retries + 1, backoff_seconds=backoff_seconds)


__all__ = ["NO_RETRY", "RETRYABLE_REMOTE_ERRORS", "RetryPolicy", "sync_policy"]
