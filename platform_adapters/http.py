"""HTTP plumbing shared by the adapters: status mapping and bounded retries."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar

import httpx

from .errors import (
    DeliveryNotFoundError,
    PlatformDataError,
    PlatformNetworkError,
    PlatformUnavailableError,
    RateLimitedError,
    UpstreamAuthError,
    get_retry_delay,
    is_retryable_error,
)

UPSTREAM_TIMEOUT = httpx.Timeout(10.0, connect=5.0)
DEFAULT_RETRY_AFTER_S = 60
MAX_ATTEMPTS = 3

T = TypeVar("T")


def _retry_after_seconds(response: httpx.Response) -> float:
    raw = response.headers.get("Retry-After")
    try:
        return float(int(raw)) if raw is not None else float(DEFAULT_RETRY_AFTER_S)
    except ValueError:
        return float(DEFAULT_RETRY_AFTER_S)


def raise_for_upstream_status(platform: str, response: httpx.Response) -> None:
    status = response.status_code
    if status in {401, 403}:
        raise UpstreamAuthError(platform, f"{platform} rejected credentials (HTTP {status})")
    if status == 404:
        raise DeliveryNotFoundError(platform, str(response.request.url.path))
    if status == 429:
        raise RateLimitedError(platform, _retry_after_seconds(response))
    if status >= 500:
        raise PlatformUnavailableError(platform)
    if status >= 400:
        raise PlatformDataError(platform, f"HTTP {status}: {response.reason_phrase}")


async def request_json(
    client: httpx.AsyncClient,
    platform: str,
    method: str,
    url: str,
    *,
    headers: Optional[Mapping[str, str]] = None,
    params: Optional[Mapping[str, Any]] = None,
    data: Optional[Mapping[str, Any]] = None,
    json_body: Any = None,
    auth: Any = None,
) -> Any:
    """Issue one request and return the decoded JSON body (``None`` for 204)."""
    try:
        response = await client.request(
            method,
            url,
            headers=dict(headers or {}),
            params=params,
            data=data,
            json=json_body,
            auth=auth,
            timeout=UPSTREAM_TIMEOUT,
        )
    except httpx.TimeoutException as exc:
        raise PlatformNetworkError(platform, "Request timeout", original_error=exc) from exc
    except httpx.TransportError as exc:
        raise PlatformNetworkError(platform, original_error=exc) from exc

    raise_for_upstream_status(platform, response)
    if response.status_code == 204 or not response.content:
        return None
    try:
        return response.json()
    except ValueError as exc:
        raise PlatformDataError(platform, "Upstream returned non-JSON body", response.text[:200]) from exc


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = MAX_ATTEMPTS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``fn`` retrying network, 5xx and 429 failures; 4xx fail immediately."""
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            attempt += 1
            if attempt >= max_attempts or not is_retryable_error(exc):
                raise
            delay = get_retry_delay(exc, attempt - 1)
            print(f"[upstream] retrying after {exc.__class__.__name__} (attempt {attempt}/{max_attempts}, {delay:.0f}s)")
            await sleep(delay)


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}", "Accept": "application/json"}


__all__ = ["UPSTREAM_TIMEOUT", "bearer", "raise_for_upstream_status", "request_json", "with_retry"]
