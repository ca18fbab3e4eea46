"""Retry policy for exchange calls, built on tenacity."""

import time
from typing import Callable

import tenacity
from tenacity.stop import stop_base

from llm_autotrader.constants import (
    BACKOFF_BASE_SECONDS,
    BACKOFF_MAX_SECONDS,
    MAX_ATTEMPTS,
    RETRY_AFTER_MAX_SECONDS,
    RETRY_AFTER_MIN_SECONDS,
)
from llm_autotrader.core.logger import logger

from .errors import ClockSkewError, RateLimitProviderError, TransientProviderError

RETRYABLE = (TransientProviderError, RateLimitProviderError, ClockSkewError)


def clamp_retry_after(value) -> float:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        seconds = RETRY_AFTER_MIN_SECONDS
    return max(RETRY_AFTER_MIN_SECONDS, min(RETRY_AFTER_MAX_SECONDS, seconds))


_backoff = tenacity.wait_exponential(
    multiplier=BACKOFF_BASE_SECONDS, max=BACKOFF_MAX_SECONDS
)


def wait_rate_limit(retry_state: tenacity.RetryCallState) -> float:
    """Honour Retry-After on rate limits, retry skew at once, back off otherwise."""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, RateLimitProviderError):
        return clamp_retry_after(exc.retry_after)
    if isinstance(exc, ClockSkewError):
        return 0.0
    return _backoff(retry_state)


class stop_with_skew_allowance(stop_base):
    """Stop after ``max_attempts``; the first clock-skew failure adds one attempt."""

    def __init__(self, max_attempts: int = MAX_ATTEMPTS):
        self.max_attempts = max_attempts
        self.skew_seen = False

    def __call__(self, retry_state: tenacity.RetryCallState) -> bool:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, ClockSkewError):
            self.skew_seen = True
        limit = self.max_attempts + (1 if self.skew_seen else 0)
        return retry_state.attempt_number >= limit


def _log_before_sleep(retry_state: tenacity.RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        f"Retrying exchange call (attempt {retry_state.attempt_number}) "
        f"in {retry_state.next_action.sleep if retry_state.next_action else 0:.1f}s: {exc}"
    )


def exchange_retrying(
    sleep: Callable[[float], None] = time.sleep,
    max_attempts: int = MAX_ATTEMPTS,
) -> tenacity.Retrying:
    """Fresh retry controller for one logical request.

    Transient errors back off 1s, 2s, 4s (capped at 8s); rate limits wait the
    clamped Retry-After; clock skew retries immediately with one bonus attempt.
    The final exception is re-raised once attempts run out.
    """
    return tenacity.Retrying(
        stop=stop_with_skew_allowance(max_attempts),
        wait=wait_rate_limit,
        retry=tenacity.retry_if_exception_type(RETRYABLE),
        sleep=sleep,
        before_sleep=_log_before_sleep,
        reraise=True,
    )
