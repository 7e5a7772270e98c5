"""Provider error hierarchy shared by every adapter."""

from __future__ import annotations


class ProviderError(Exception):
    """Base class for failures talking to an upstream model API."""

    code = "provider_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthError(ProviderError):
    code = "auth_error"


class RateLimited(ProviderError):
    code = "rate_limited"

    def __init__(self, retry_after_secs: int | None = None) -> None:
        msg = "Rate limited"
        if retry_after_secs is not None:
            msg = f"Rate limited, retry after {retry_after_secs}s"
        super().__init__(msg)
        self.retry_after_secs = retry_after_secs


class RequestFailed(ProviderError):
    code = "request_failed"


class UnknownProvider(RequestFailed):
    code = "unknown_provider"


class NetworkError(ProviderError):
    code = "network_error"


class InvalidResponse(ProviderError):
    code = "invalid_response"
