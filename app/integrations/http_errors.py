"""Translate httpx failures into the provider error taxonomy."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from app.integrations.contracts import (
    ProviderAuthError,
    ProviderError,
    ProviderNetworkError,
    ProviderQuotaExhaustedError,
    ProviderRateLimitedError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ProviderValidationError,
)

_QUOTA_MARKERS = ("quota exceeded", "limit exceeded", "resource_exhausted", "insufficient_quota")


def parse_retry_after_ms(headers: Mapping[str, Any] | None) -> int | None:
    """Return the Retry-After hint in milliseconds (seconds or HTTP date)."""

    if not headers:
        return None
    value = headers.get("Retry-After") or headers.get("retry-after")
    if value is None:
        return None
    text = str(value).strip()
    try:
        return max(0, int(float(text) * 1000))
    except ValueError:
        pass
    try:
        parsed = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return max(0, int((parsed - datetime.now(UTC)).total_seconds() * 1000))


def is_quota_message(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _QUOTA_MARKERS)


def map_transport_error(provider: str, exc: httpx.HTTPError, *, timeout_ms: int) -> ProviderError:
    if isinstance(exc, httpx.TimeoutException):
        return ProviderTimeoutError(provider, timeout_ms, cause=exc)
    return ProviderNetworkError(provider, f"{provider} request failed: {exc}", cause=exc)


def raise_for_status(provider: str, response: httpx.Response) -> None:
    """Raise the matching ``ProviderError`` for non-2xx responses."""

    status_code = response.status_code
    if 200 <= status_code < 300:
        return
    body_preview = response.text[:200]
    if status_code == httpx.codes.TOO_MANY_REQUESTS:
        retry_after = parse_retry_after_ms(response.headers)
        if is_quota_message(body_preview):
            raise ProviderQuotaExhaustedError(
                provider,
                f"{provider} quota exhausted: {body_preview}",
                retry_after_ms=retry_after,
            )
        raise ProviderRateLimitedError(
            provider,
            f"{provider} rate limited the request",
            retry_after_ms=retry_after,
        )
    if status_code in (httpx.codes.UNAUTHORIZED, httpx.codes.FORBIDDEN):
        raise ProviderAuthError(
            provider, f"{provider} rejected the credentials", status_code=status_code
        )
    if status_code >= 500:
        raise ProviderUnavailableError(
            provider,
            f"{provider} returned a server error ({status_code})",
            status_code=status_code,
        )
    raise ProviderValidationError(
        provider,
        f"{provider} rejected the request ({status_code}): {body_preview}",
        status_code=status_code,
    )


__all__ = [
    "is_quota_message",
    "map_transport_error",
    "parse_retry_after_ms",
    "raise_for_status",
]
