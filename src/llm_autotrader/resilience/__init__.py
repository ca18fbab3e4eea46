"""Resilience patterns for exchange and model-provider API calls."""

from .errors import (
    ProviderError,
    TransientProviderError,
    RateLimitProviderError,
    AuthProviderError,
    UnknownProviderError,
    ExchangeAPIError,
    ClockSkewError,
    LLMProviderError,
)
from .retry import exchange_retrying, clamp_retry_after, wait_rate_limit
from .log import log_event, log_provider_error

__all__ = [
    "ProviderError",
    "TransientProviderError",
    "RateLimitProviderError",
    "AuthProviderError",
    "UnknownProviderError",
    "ExchangeAPIError",
    "ClockSkewError",
    "LLMProviderError",
    "exchange_retrying",
    "clamp_retry_after",
    "wait_rate_limit",
    "log_event",
    "log_provider_error",
]
