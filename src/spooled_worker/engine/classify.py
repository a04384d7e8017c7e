"""Retry eligibility and wait hints for failed remote calls."""
from __future__ import annotations

import httpx

from spooled_worker.errors import CircuitBreakerOpenError, ErrorKind, SpooledError, parse_retry_after

IDEMPOTENT_METHODS = {"GET", "HEAD", "PUT", "DELETE", "OPTIONS"}
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def is_idempotent_method(method: str) -> bool:
    return method.upper() in IDEMPOTENT_METHODS


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, CircuitBreakerOpenError):
        return False
    if isinstance(exc, SpooledError):
        if exc.kind in (ErrorKind.NETWORK, ErrorKind.TIMEOUT):
            return True
        return is_retryable_status(exc.status_code)
    if isinstance(exc, httpx.HTTPStatusError):
        return is_retryable_status(exc.response.status_code)
    if isinstance(exc, (httpx.ConnectError, httpx.TimeoutException)):
        return True
    if isinstance(exc, httpx.TransportError):
        # no response at all: the connection dropped mid-flight
        return True
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    return False


def counts_as_breaker_failure(exc: BaseException) -> bool:
    """Client mistakes (4xx other than 429) say nothing about backend health."""
    status = None
    if isinstance(exc, CircuitBreakerOpenError):
        return False
    if isinstance(exc, SpooledError) and exc.status_code:
        status = exc.status_code
    elif isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
    if status is None or status == 429:
        return True
    return not 400 <= status < 500


def retry_after_hint(exc: BaseException) -> float | None:
    if isinstance(exc, SpooledError) and exc.kind is ErrorKind.RATE_LIMIT:
        return exc.retry_after
    if isinstance(exc, httpx.HTTPStatusError):
        return parse_retry_after(exc.response.headers.get("Retry-After"))
    return None
