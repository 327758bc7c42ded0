"""Error taxonomy shared by the adapters, the webhook pipeline and the API.

Every adapter failure is a ``PlatformAdapterError`` carrying the platform,
a stable ``code``, whether retrying can help, and an optional retry hint in
seconds. The HTTP layer maps these onto status codes; callers that aggregate
across platforms catch them per platform and degrade to an empty result.
"""

from __future__ import annotations

from typing import Any, Optional

UNSUPPORTED_PLATFORM = "UNSUPPORTED_PLATFORM"
UNSUPPORTED_OPERATION = "UNSUPPORTED_OPERATION"
AUTH_ERROR = "AUTH_ERROR"
TOKEN_EXPIRED = "TOKEN_EXPIRED"
RATE_LIMITED = "RATE_LIMITED"
PLATFORM_UNAVAILABLE = "PLATFORM_UNAVAILABLE"
NETWORK_ERROR = "NETWORK_ERROR"
DATA_ERROR = "DATA_ERROR"
NOT_FOUND = "NOT_FOUND"
WEBHOOK_INVALID = "WEBHOOK_INVALID"

MAX_BACKOFF_S = 16.0


class PlatformAdapterError(Exception):
    code = "ADAPTER_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        platform: Optional[str] = None,
        *,
        retryable: Optional[bool] = None,
        retry_after: Optional[float] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.platform = platform
        if retryable is not None:
            self.retryable = retryable
        self.retry_after = retry_after
        self.original_error = original_error

    def to_dict(self) -> dict:
        data = {"error": self.code, "message": self.message, "platform": self.platform}
        if self.retry_after is not None:
            data["retryAfter"] = self.retry_after
        return data


class UnsupportedPlatformError(PlatformAdapterError):
    """Unknown platform key, or no adapter registered for it."""

    code = UNSUPPORTED_PLATFORM

    def __init__(self, platform: str) -> None:
        super().__init__(f"No adapter registered for platform: {platform}", platform)


class CapabilityError(PlatformAdapterError):
    """The adapter does not offer the requested capability (OAuth, webhooks, ...)."""

    code = UNSUPPORTED_OPERATION


class UpstreamAuthError(PlatformAdapterError):
    """OAuth exchange/refresh or an authenticated call was rejected upstream."""

    code = AUTH_ERROR

    def __init__(
        self,
        platform: Optional[str],
        message: str = "Authentication failed",
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, platform, original_error=original_error)


class TokenExpiredError(UpstreamAuthError):
    """The refresh token (or captured session) itself is no longer valid."""

    code = TOKEN_EXPIRED

    def __init__(self, platform: Optional[str], message: str = "Refresh token expired") -> None:
        super().__init__(platform, message)


class RateLimitedError(PlatformAdapterError):
    code = RATE_LIMITED
    retryable = True

    def __init__(self, platform: Optional[str], retry_after: float, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"Rate limited by {platform}. Retry after {int(retry_after)} seconds.",
            platform,
            retry_after=retry_after,
        )


class PlatformUnavailableError(PlatformAdapterError):
    code = PLATFORM_UNAVAILABLE
    retryable = True

    def __init__(
        self,
        platform: Optional[str],
        message: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            message or f"{platform} service is currently unavailable",
            platform,
            retry_after=30,
            original_error=original_error,
        )


class PlatformNetworkError(PlatformAdapterError):
    code = NETWORK_ERROR
    retryable = True

    def __init__(
        self,
        platform: Optional[str],
        message: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            message or f"Network error connecting to {platform}",
            platform,
            retry_after=5,
            original_error=original_error,
        )


class PlatformDataError(PlatformAdapterError):
    """Upstream returned something we cannot interpret."""

    code = DATA_ERROR

    def __init__(self, platform: Optional[str], message: str, raw_data: Any = None) -> None:
        super().__init__(message, platform)
        self.raw_data = raw_data


class DeliveryNotFoundError(PlatformAdapterError):
    code = NOT_FOUND

    def __init__(self, platform: Optional[str], delivery_id: str) -> None:
        super().__init__(f"Delivery {delivery_id} not found", platform)
        self.delivery_id = delivery_id


class SignatureInvalidError(PlatformAdapterError):
    code = WEBHOOK_INVALID

    def __init__(self, platform: Optional[str], message: str = "Invalid signature") -> None:
        super().__init__(message, platform)


def is_retryable_error(error: BaseException) -> bool:
    return isinstance(error, PlatformAdapterError) and bool(error.retryable)


def get_retry_delay(error: BaseException, attempt: int) -> float:
    """Seconds to wait before retry ``attempt`` (0-based)."""
    if isinstance(error, PlatformAdapterError) and error.retry_after:
        return float(error.retry_after)
    return min(float(2 ** attempt), MAX_BACKOFF_S)


__all__ = [
    "CapabilityError",
    "DeliveryNotFoundError",
    "PlatformAdapterError",
    "PlatformDataError",
    "PlatformNetworkError",
    "PlatformUnavailableError",
    "RateLimitedError",
    "SignatureInvalidError",
    "TokenExpiredError",
    "UnsupportedPlatformError",
    "UpstreamAuthError",
    "get_retry_delay",
    "is_retryable_error",
]
