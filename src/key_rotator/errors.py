# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Error types and classification for the key rotator.

Request-terminal errors derive from ProxyError and know how to render
themselves as an OpenAI-style error payload. Upstream failures are built
from httpx responses by classify_response().
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

import httpx


class KeyRotatorError(Exception):
    """Base class for all key rotator errors."""


class InvalidArgumentError(KeyRotatorError, ValueError):
    """Raised when an operation receives an unusable argument."""


class KeyNotFoundError(KeyRotatorError, LookupError):
    """Raised when a key record id does not exist."""


# =============================================================================
# REQUEST-TERMINAL ERRORS
# =============================================================================


class ProxyError(KeyRotatorError):
    """An error that ends a proxied request and is reported to the client."""

    status_code: int = 500
    error_type: str = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        return {"error": {"message": self.message, "type": self.error_type}}


class NoAvailableKeyError(ProxyError):
    """Raised when no credential is eligible for rotation."""

    status_code = 503
    error_type = "no_key_available"

    def __init__(
        self,
        message: str = "No available API keys (all active keys might be rate-limited or disabled)",
    ):
        super().__init__(message)


class UpstreamError(ProxyError):
    """A failed upstream call."""

    error_type = "upstream_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        headers: Optional[Mapping[str, str]] = None,
        upstream_type: Optional[str] = None,
    ):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        self.upstream_status = status_code
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        self.upstream_type = upstream_type

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.upstream_type or self.error_type,
            }
        }


class RateLimitedError(UpstreamError):
    """Upstream answered 429."""

    error_type = "rate_limit_error"


class UpstreamServerError(UpstreamError):
    """Upstream answered with a 5xx status."""

    error_type = "upstream_server_error"


class UpstreamClientError(UpstreamError):
    """Upstream answered with a 4xx status other than 429."""

    error_type = "upstream_client_error"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        if self.is_api_key_error:
            self.error_type = "api_key_error"

    @property
    def is_api_key_error(self) -> bool:
        return self.upstream_status in (401, 403)


class UpstreamConnectionError(UpstreamError):
    """The upstream could not be reached; no status is available."""

    status_code = 502
    error_type = "upstream_unreachable"


class MaxRetriesExceededError(ProxyError):
    """The retry loop ran out of attempts."""

    error_type = "max_retries_exceeded"

    def __init__(
        self,
        message: str = "Maximum retries exceeded",
        last_error: Optional[UpstreamError] = None,
    ):
        super().__init__(message)
        self.last_error = last_error
        if last_error is not None:
            self.status_code = last_error.status_code

    def to_payload(self) -> Dict[str, Any]:
        if self.last_error is None:
            return super().to_payload()
        return {
            "error": {
                "message": f"{self.message}: {self.last_error.message}",
                "type": self.error_type,
            }
        }


# =============================================================================
# CLASSIFICATION
# =============================================================================


def get_status_code(e: Exception) -> Optional[int]:
    """Upstream HTTP status carried by an error, if any."""
    if isinstance(e, UpstreamError):
        return e.upstream_status
    if isinstance(e, httpx.HTTPStatusError):
        return e.response.status_code
    return None


def _get_headers(e: Exception) -> Mapping[str, str]:
    if isinstance(e, UpstreamError):
        return e.headers
    if isinstance(e, httpx.HTTPStatusError):
        return {k.lower(): v for k, v in e.response.headers.items()}
    return {}


def is_rate_limit_error(e: Exception) -> bool:
    """Checks if the exception is an upstream rate limit error."""
    return isinstance(e, RateLimitedError) or get_status_code(e) == 429


def is_server_error(e: Exception) -> bool:
    """Checks if the exception is a temporary server-side error."""
    status = get_status_code(e)
    return status is not None and status >= 500


def is_retryable_error(e: Exception) -> bool:
    return is_rate_limit_error(e) or is_server_error(e)


def _extract_error_body(response: httpx.Response) -> tuple:
    """Returns (message, type) from an upstream error body."""
    try:
        data = response.json()
    except (json.JSONDecodeError, ValueError):
        text = response.text.strip()
        return (text[:500] or response.reason_phrase or "Upstream error", None)

    # Some upstreams wrap the error object in a list
    if isinstance(data, list) and data:
        data = data[0]
    if isinstance(data, dict):
        err = data.get("error", data)
        if isinstance(err, dict):
            message = err.get("message") or response.reason_phrase
            err_type = err.get("type") or err.get("status")
            return (str(message), str(err_type) if err_type else None)
        if isinstance(err, str):
            return (err, None)
    return (response.reason_phrase or "Upstream error", None)


def classify_response(response: httpx.Response) -> UpstreamError:
    """
    Builds the matching UpstreamError for a non-2xx upstream response.

    The response body must already be read.
    """
    status = response.status_code
    message, upstream_type = _extract_error_body(response)
    headers = dict(response.headers)

    if status == 429:
        cls = RateLimitedError
    elif status >= 500:
        cls = UpstreamServerError
    else:
        cls = UpstreamClientError
    return cls(
        message,
        status_code=status,
        headers=headers,
        upstream_type=upstream_type,
    )


def get_rate_limit_reset(error: Exception, now: datetime) -> Optional[datetime]:
    """
    Extracts the upstream-supplied reset time of a rate limit, as naive UTC.

    Checks ``x-ratelimit-reset`` (epoch seconds) first, then ``retry-after``
    (seconds from now). Returns None if neither is usable.
    """
    headers = _get_headers(error)

    reset_raw = headers.get("x-ratelimit-reset")
    if reset_raw:
        try:
            reset_epoch = float(reset_raw)
            return datetime.fromtimestamp(reset_epoch, timezone.utc).replace(
                tzinfo=None
            )
        except (TypeError, ValueError, OverflowError, OSError):
            pass

    retry_after = headers.get("retry-after")
    if retry_after:
        try:
            return now + timedelta(seconds=float(retry_after))
        except (TypeError, ValueError, OverflowError):
            pass

    return None


def mask_credential(credential: Optional[str]) -> str:
    """
    Mask a credential for safe display in logs and error messages.

    Shows the last 6 characters (e.g., "...xyz123").
    """
    if not credential:
        return "***"
    if len(credential) > 6:
        return f"...{credential[-6:]}"
    return "***"


def mask_secret_for_display(secret: str) -> str:
    """Admin listing format: first 10 and last 4 characters."""
    if len(secret) <= 14:
        return mask_credential(secret)
    return f"{secret[:10]}...{secret[-4:]}"
