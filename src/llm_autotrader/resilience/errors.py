"""Error classification for exchange and model-provider calls."""

from typing import Optional


class ProviderError(Exception):
    """Base class for all provider-related errors."""


class TransientProviderError(ProviderError):
    """Temporary failures: timeouts, connection errors, HTTP 5xx."""


class RateLimitProviderError(ProviderError):
    """HTTP 429 or exchange rate-limit retCode."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class AuthProviderError(ProviderError):
    """Authentication or permission errors."""


class UnknownProviderError(ProviderError):
    """Unexpected or unclassified errors."""


class ExchangeAPIError(ProviderError):
    """Exchange answered with a non-zero retCode."""

    def __init__(self, ret_code: int, ret_msg: str):
        super().__init__(f"retCode={ret_code} retMsg={ret_msg}")
        self.ret_code = ret_code
        self.ret_msg = ret_msg


class ClockSkewError(ExchangeAPIError):
    """Request timestamp rejected by the exchange (retCode 10002)."""


class LLMProviderError(ProviderError):
    """Chat-completion call failed or returned no usable content."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider

