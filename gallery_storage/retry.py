"""
Retry with exponential backoff, shared by provider adapters and the sync engine.

Only error kinds listed in `retry_on` are retried; everything else propagates
on the first failure. When attempts run out the last typed error is re-raised
unchanged so callers can still tell "rate limited" from "upload failed".
"""
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from gallery_storage.config import (
    RETRY_INITIAL_DELAY,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY,
    RETRY_MULTIPLIER,
)
from gallery_storage.errors import RateLimitedError, TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: tuple[type[Exception], ...] = (TransientNetworkError, RateLimitedError)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = RETRY_MAX_ATTEMPTS
    initial_delay: float = RETRY_INITIAL_DELAY
    max_delay: float = RETRY_MAX_DELAY
    multiplier: float = RETRY_MULTIPLIER

    def wait(self) -> Callable[[RetryCallState], float]:
        """Exponential backoff, stretched to a provider's Retry-After when that is longer."""
        backoff = wait_exponential(multiplier=self.initial_delay, exp_base=self.multiplier, max=self.max_delay)

        def wait(retry_state: RetryCallState) -> float:
            delay = backoff(retry_state)
            retry_after = getattr(retry_state.outcome.exception(), "retry_after", None)
            if retry_after:
                delay = max(delay, float(retry_after))
            return delay

        return wait


DEFAULT_RETRY_POLICY = RetryPolicy()


def with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    *,
    retry_on: tuple[type[Exception], ...] = RETRYABLE_ERRORS,
    on_retry: Callable[[Exception, int], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn until it succeeds, a non-retryable error is raised, or
    policy.max_attempts is reached. on_retry(exc, attempt) runs after the
    backoff sleep and before the next attempt.
    """
    failures: list[BaseException] = []

    def retryable(exc: BaseException) -> bool:
        if not isinstance(exc, retry_on):
            return False
        # Waiting that long belongs to the caller, not a request thread
        retry_after = getattr(exc, "retry_after", None)
        return not (retry_after and retry_after > policy.max_delay)

    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception()
        failures.append(exc)
        logger.warning(
            "Attempt %d/%d failed (%s); retrying in %.1fs",
            retry_state.attempt_number,
            policy.max_attempts,
            type(exc).__name__,
            retry_state.next_action.sleep,
        )

    def after(retry_state: RetryCallState) -> None:
        if retry_state.attempt_number >= policy.max_attempts:
            logger.warning(
                "Giving up after %d attempts: %s", retry_state.attempt_number, retry_state.outcome.exception()
            )

    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=policy.wait(),
        retry=retry_if_exception(retryable),
        before_sleep=before_sleep,
        after=after,
        sleep=sleep,
        reraise=True,
    )
    for attempt in retrying:
        with attempt:
            # A failing hook counts against the same attempt budget
            if failures and on_retry is not None:
                on_retry(failures[-1], attempt.retry_state.attempt_number)
            return fn()
