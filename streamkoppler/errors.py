"""Error taxonomy for upstream requests and its classification rules."""

from __future__ import annotations

import asyncio
from enum import Enum

import httpx

from .rate_limits import RateLimitSnapshot, UsageLimitInfo, format_reset_time, parse_usage_limit_error


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    AUTH_INVALID = "auth_invalid"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    MALFORMED = "malformed_upstream_data"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


_INCOMPLETE_PAYLOAD_MARKERS = (
    "response payload is not completed",
    "transferencodingerror",
    "not enough data to satisfy transfer length header",
)

_TRANSIENT_MARKERS = (
    "econnreset",
    "etimedout",
    "epipe",
    "econnaborted",
    "err_stream_premature_close",
    "socket hang up",
    "aborted",
    "connection reset",
)


class UpstreamError(Exception):
    """Base class for failures of one upstream request."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


class TransientError(UpstreamError):
    kind = ErrorKind.TRANSIENT


class AuthInvalidError(UpstreamError):
    kind = ErrorKind.AUTH_INVALID


class ServerError(UpstreamError):
    kind = ErrorKind.SERVER_ERROR


class ClientError(UpstreamError):
    kind = ErrorKind.CLIENT_ERROR


class MalformedUpstreamData(UpstreamError):
    kind = ErrorKind.MALFORMED


class RequestCancelled(UpstreamError):
    """The caller withdrew the request; flush logic still runs."""

    kind = ErrorKind.CANCELLED


class RateLimitedError(UpstreamError):
    """HTTP 429 or an explicit usage-limit body."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = 429,
        body: str | None = None,
        usage_limit: UsageLimitInfo | None = None,
        snapshot: RateLimitSnapshot | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code, body=body)
        self.usage_limit = usage_limit
        self.snapshot = snapshot

    def reset_at(self) -> float | None:
        if self.snapshot is not None and self.snapshot.reset_at is not None:
            return self.snapshot.reset_at
        if self.usage_limit is not None:
            return self.usage_limit.reset_epoch()
        return None

    def describe_reset(self) -> str:
        """Human-readable reset estimate, e.g. `resets in 1h 20m`."""
        reset_at = self.reset_at()
        if reset_at is None:
            return "reset time unknown"
        return f"resets in {format_reset_time(reset_at)}"


def is_incomplete_payload_error(exc: BaseException) -> bool:
    """Detect truncated/incomplete upstream response payload errors."""
    lowered = str(exc).lower()
    return any(marker in lowered for marker in _INCOMPLETE_PAYLOAD_MARKERS)


def _looks_transient(exc: BaseException) -> bool:
    lowered = f"{type(exc).__name__} {exc}".lower()
    return any(marker in lowered for marker in _TRANSIENT_MARKERS)


def error_from_response(
    status_code: int,
    body: str,
    *,
    snapshot: RateLimitSnapshot | None = None,
) -> UpstreamError:
    """Map a non-2xx upstream response to a typed error."""
    usage_limit = parse_usage_limit_error(body)
    if usage_limit is not None:
        return RateLimitedError(
            f"usage limit reached ({usage_limit.plan_type or 'unknown'} plan): {usage_limit.message}",
            status_code=status_code,
            body=body,
            usage_limit=usage_limit,
            snapshot=snapshot,
        )
    detail = body.strip()[:500] or f"HTTP {status_code}"
    if status_code == 429:
        return RateLimitedError(f"rate limited: {detail}", status_code=status_code, body=body, snapshot=snapshot)
    if status_code in {401, 403}:
        return AuthInvalidError(
            f"authentication rejected (HTTP {status_code}); please re-authenticate: {detail}",
            status_code=status_code,
            body=body,
        )
    if status_code >= 500:
        return ServerError(f"upstream server error (HTTP {status_code}): {detail}", status_code=status_code, body=body)
    return ClientError(f"upstream rejected request (HTTP {status_code}): {detail}", status_code=status_code, body=body)


def classify_error(exc: BaseException) -> ErrorKind:
    """Decide which taxonomy bucket one exception belongs to."""
    if isinstance(exc, asyncio.CancelledError):
        return ErrorKind.CANCELLED
    if isinstance(exc, UpstreamError):
        return exc.kind
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        if response is None:
            return ErrorKind.TRANSIENT
        status = response.status_code
        if status == 429:
            return ErrorKind.RATE_LIMITED
        if status in {401, 403}:
            return ErrorKind.AUTH_INVALID
        if status >= 500:
            return ErrorKind.SERVER_ERROR
        return ErrorKind.CLIENT_ERROR
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return ErrorKind.TRANSIENT
    if is_incomplete_payload_error(exc) or _looks_transient(exc):
        return ErrorKind.TRANSIENT
    return ErrorKind.INTERNAL


def is_retryable(kind: ErrorKind, *, retry_server_errors: bool = False) -> bool:
    if kind in {ErrorKind.TRANSIENT, ErrorKind.RATE_LIMITED}:
        return True
    if kind is ErrorKind.SERVER_ERROR:
        return retry_server_errors
    return False
