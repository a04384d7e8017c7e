"""Error taxonomy for queue API calls.

Every failure a collaborator raises is expressed as one ``SpooledError``
tagged with an ``ErrorKind``; callers branch on ``exc.kind`` instead of on
per-status subclasses.
"""
from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Mapping

import httpx

DEFAULT_RATE_LIMIT_WAIT = 60.0


class ErrorKind(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    VALIDATION = "validation"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    CIRCUIT_OPEN = "circuit_open"
    API = "api"


_STATUS_KINDS = {
    401: ErrorKind.AUTHENTICATION,
    403: ErrorKind.AUTHORIZATION,
    404: ErrorKind.NOT_FOUND,
    409: ErrorKind.CONFLICT,
    413: ErrorKind.PAYLOAD_TOO_LARGE,
    422: ErrorKind.VALIDATION,
    429: ErrorKind.RATE_LIMIT,
}


def kind_for_status(status_code: int) -> ErrorKind:
    if status_code in _STATUS_KINDS:
        return _STATUS_KINDS[status_code]
    if status_code >= 500:
        return ErrorKind.SERVER
    return ErrorKind.API


@dataclass(frozen=True)
class RateLimitInfo:
    retry_after: float | None = None
    limit: int | None = None
    remaining: int | None = None
    reset: int | None = None

    def retry_after_seconds(self, now: float | None = None) -> float:
        """Recommended wait before retrying."""
        if self.retry_after is not None:
            return self.retry_after
        if self.reset is not None:
            current = time.time() if now is None else now
            return max(0.0, self.reset - current)
        return DEFAULT_RATE_LIMIT_WAIT


class SpooledError(Exception):
    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.API,
        status_code: int = 0,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        request_id: str | None = None,
        raw_body: str | None = None,
        rate_limit: RateLimitInfo | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code
        self.code = code
        self.details = details or {}
        self.request_id = request_id
        self.raw_body = raw_body
        if rate_limit is None and kind is ErrorKind.RATE_LIMIT:
            rate_limit = RateLimitInfo()
        self.rate_limit = rate_limit

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, kind={self.kind.value}, status_code={self.status_code})"

    @property
    def retry_after(self) -> float | None:
        return self.rate_limit.retry_after if self.rate_limit else None

    def retry_after_seconds(self, now: float | None = None) -> float | None:
        """Server-recommended wait for rate-limit errors, None for every other kind."""
        if self.rate_limit is None:
            return None
        return self.rate_limit.retry_after_seconds(now)

    def field_errors(self) -> dict[str, Any]:
        fields = self.details.get("fields")
        if isinstance(fields, dict):
            return fields
        return dict(self.details)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "kind": self.kind.value,
            "status_code": self.status_code,
            "code": self.code,
            "details": self.details,
            "request_id": self.request_id,
        }

    @classmethod
    def rate_limited(
        cls,
        message: str = "Rate limit exceeded",
        *,
        retry_after: float | None = None,
        limit: int | None = None,
        remaining: int | None = None,
        reset: int | None = None,
        **kwargs: Any,
    ) -> SpooledError:
        return cls(
            message,
            kind=ErrorKind.RATE_LIMIT,
            status_code=429,
            rate_limit=RateLimitInfo(retry_after=retry_after, limit=limit, remaining=remaining, reset=reset),
            **kwargs,
        )

    @classmethod
    def from_response(
        cls,
        status_code: int,
        body: str,
        headers: Mapping[str, Any] | None = None,
    ) -> SpooledError:
        headers = headers or {}
        data = _parse_body(body)
        message = data.get("message") or data.get("error") or f"HTTP error {status_code}"
        code = data.get("code")
        details = data.get("details")
        kind = kind_for_status(status_code)

        rate_limit = None
        if kind is ErrorKind.RATE_LIMIT:
            rate_limit = RateLimitInfo(
                retry_after=parse_retry_after(_header(headers, "Retry-After")),
                limit=_int_or_none(_header(headers, "X-RateLimit-Limit")),
                remaining=_int_or_none(_header(headers, "X-RateLimit-Remaining")),
                reset=_int_or_none(_header(headers, "X-RateLimit-Reset")),
            )

        return cls(
            str(message),
            kind=kind,
            status_code=status_code,
            code=str(code) if code is not None else None,
            details=details if isinstance(details, dict) else {},
            request_id=_header(headers, "X-Request-Id"),
            raw_body=body,
            rate_limit=rate_limit,
        )

    @classmethod
    def from_httpx_response(cls, response: httpx.Response) -> SpooledError:
        return cls.from_response(response.status_code, response.text, response.headers)

    @classmethod
    def from_transport_error(cls, exc: httpx.TransportError) -> SpooledError:
        if isinstance(exc, httpx.TimeoutException):
            err = cls(f"Request timed out: {exc}", kind=ErrorKind.TIMEOUT, code="TIMEOUT")
        else:
            err = cls(f"Connection failed: {exc}", kind=ErrorKind.NETWORK, code="NETWORK_ERROR")
        err.__cause__ = exc
        return err


class CircuitBreakerOpenError(SpooledError):
    """Raised locally when the breaker rejects a call; the network is never reached."""

    def __init__(
        self,
        message: str = "Circuit breaker is open",
        *,
        state: str = "open",
        failure_count: int = 0,
        opened_at: float | None = None,
        timeout: float | None = None,
    ):
        super().__init__(
            message,
            kind=ErrorKind.CIRCUIT_OPEN,
            status_code=503,
            code="CIRCUIT_BREAKER_OPEN",
        )
        self.state = state
        self.failure_count = failure_count
        self.opened_at = opened_at
        self.timeout = timeout

    def time_until_retry(self, now: float | None = None) -> float | None:
        if self.opened_at is None or self.timeout is None:
            return None
        current = time.time() if now is None else now
        return max(0.0, self.timeout - (current - self.opened_at))


def parse_retry_after(value: str | None, now: float | None = None) -> float | None:
    """Parse a Retry-After header given as delta-seconds or an HTTP-date."""
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return max(0.0, seconds) if math.isfinite(seconds) else None
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None
    if when is None:
        return None
    current = time.time() if now is None else now
    return max(0.0, when.timestamp() - current)


def _parse_body(body: str) -> dict[str, Any]:
    if not body:
        return {}
    try:
        data = json.loads(body)
    except ValueError:
        return {"message": body}
    return data if isinstance(data, dict) else {}


def _header(headers: Mapping[str, Any], name: str) -> str | None:
    # httpx.Headers is already case-insensitive; plain dicts are not
    for key, value in headers.items():
        if key.lower() == name.lower():
            if isinstance(value, (list, tuple)):
                return str(value[0]) if value else None
            return str(value)
    return None


def _int_or_none(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return int(number)
