from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, TypeVar
import logging
import time

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """
    Exponential backoff schedule.

    The wait before attempt n+1 is ``initial_delay * multiplier ** (n - 1)``,
    capped at ``max_delay``.
    """
    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0

    def validate(self) -> None:
        if not isinstance(self.max_attempts, int) or self.max_attempts <= 0:
            raise ValueError("BackoffPolicy.max_attempts must be a positive integer.")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("BackoffPolicy delays must not be negative.")
        if self.multiplier < 1:
            raise ValueError("BackoffPolicy.multiplier must be >= 1.")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)

    def schedule(self) -> list[float]:
        """Every wait the policy can produce, in order."""
        return [self.delay_for(a) for a in range(1, self.max_attempts)]

    def wait(self) -> wait_exponential:
        return wait_exponential(
            multiplier=self.initial_delay,
            exp_base=self.multiplier,
            min=0,
            max=self.max_delay,
        )


def _log_before_sleep(policy: BackoffPolicy, label: str) -> Callable[[RetryCallState], None]:
    def _log(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0.0
        logger.warning(
            "%s failed (attempt %d/%d): %s; retrying in %.1fs",
            label, state.attempt_number, policy.max_attempts, exc, delay,
        )
    return _log


def call_with_retry(
    fn: Callable[[], T],
    *,
    policy: BackoffPolicy,
    is_retryable: Callable[[BaseException], bool],
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
    on_retry: Optional[Callable[[RetryCallState], None]] = None,
) -> T:
    """
    Run `fn` until it succeeds, raises a non-retryable error, or the policy's
    attempt budget is spent. The last exception is re-raised unchanged.
    """
    policy.validate()
    before_sleep = _log_before_sleep(policy, label)
    if on_retry is not None:
        log = before_sleep

        def before_sleep(state: RetryCallState) -> None:
            log(state)
            on_retry(state)

    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=policy.wait(),
        retry=retry_if_exception(is_retryable),
        sleep=sleep,
        before_sleep=before_sleep,
        reraise=True,
    )
    return retrying(fn)
