"""Tests for retry execution and classification."""

import httpx
import pytest

from spooled_worker.config import BackoffConfig
from spooled_worker.engine.classify import (
    counts_as_breaker_failure,
    is_idempotent_method,
    is_retryable_error,
    retry_after_hint,
)
from spooled_worker.engine.retries import RetryExecutor
from spooled_worker.errors import CircuitBreakerOpenError, SpooledError


class FlakyCall:
    def __init__(self, failures: list[BaseException], result="ok"):
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


def _executor(**kwargs):
    sleeps = []
    config = BackoffConfig(**{"base_delay": 1.0, "jitter": 0.0, **kwargs})
    return RetryExecutor(config, sleep=sleeps.append), sleeps


def _unavailable():
    return SpooledError.from_response(503, '{"message": "unavailable"}')


def _http_status_error(status: int, headers=None) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.example.com/api/v1/jobs/claim")
    response = httpx.Response(status, headers=headers, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


def test_get_retries_until_success():
    executor, sleeps = _executor(max_retries=3)
    call = FlakyCall([_unavailable(), _unavailable(), _unavailable()])

    assert executor.execute(call, "GET") == "ok"
    assert call.calls == 4
    assert sleeps == [1.0, 2.0, 4.0]


def test_gives_up_after_max_retries():
    executor, sleeps = _executor(max_retries=2)
    call = FlakyCall([_unavailable()] * 5)

    with pytest.raises(SpooledError) as exc_info:
        executor.execute(call, "GET")

    assert exc_info.value.status_code == 503
    assert call.calls == 3
    assert len(sleeps) == 2


def test_post_not_retried_by_default():
    executor, sleeps = _executor(max_retries=3)
    call = FlakyCall([_unavailable()])

    with pytest.raises(SpooledError):
        executor.execute(call, "POST")

    assert call.calls == 1
    assert sleeps == []


def test_post_retried_when_forced():
    executor, sleeps = _executor(max_retries=3)
    call = FlakyCall([_unavailable()])

    assert executor.execute(call, "POST", force_retry=True) == "ok"
    assert call.calls == 2
    assert sleeps == [1.0]


def test_client_error_never_retried():
    executor, sleeps = _executor(max_retries=3)
    call = FlakyCall([SpooledError.from_response(400, '{"message": "bad payload"}')])

    with pytest.raises(SpooledError) as exc_info:
        executor.execute(call, "GET", force_retry=True)

    assert exc_info.value.status_code == 400
    assert call.calls == 1
    assert sleeps == []


def test_rate_limit_waits_retry_after():
    executor, sleeps = _executor(max_retries=3, max_delay=30.0)
    call = FlakyCall([SpooledError.rate_limited(retry_after=5.0)])

    assert executor.execute(call, "GET") == "ok"
    assert sleeps == [5.0]


def test_retries_httpx_transport_errors():
    executor, sleeps = _executor(max_retries=2)
    request = httpx.Request("GET", "https://api.example.com/health")
    call = FlakyCall([httpx.ConnectError("refused", request=request), httpx.ReadTimeout("slow", request=request)])

    assert executor.execute(call, "GET") == "ok"
    assert len(sleeps) == 2


def test_retries_httpx_status_error_with_retry_after_header():
    executor, sleeps = _executor(max_retries=1)
    call = FlakyCall([_http_status_error(429, headers={"Retry-After": "3"})])

    assert executor.execute(call, "GET") == "ok"
    assert sleeps == [3.0]


def test_non_retryable_exception_propagates_unchanged():
    executor, sleeps = _executor(max_retries=3)
    original = KeyError("missing")
    call = FlakyCall([original])

    with pytest.raises(KeyError) as exc_info:
        executor.execute(call, "GET")

    assert exc_info.value is original
    assert sleeps == []


def test_idempotent_methods():
    for method in ("GET", "head", "PUT", "DELETE", "OPTIONS"):
        assert is_idempotent_method(method) is True
    for method in ("POST", "PATCH"):
        assert is_idempotent_method(method) is False


def test_retryable_classification():
    request = httpx.Request("GET", "https://api.example.com")
    assert is_retryable_error(_unavailable()) is True
    assert is_retryable_error(SpooledError.from_response(408, "")) is True
    assert is_retryable_error(SpooledError.from_response(404, "")) is False
    assert is_retryable_error(httpx.ConnectError("refused", request=request)) is True
    assert is_retryable_error(_http_status_error(502)) is True
    assert is_retryable_error(_http_status_error(422)) is False
    assert is_retryable_error(ConnectionResetError()) is True
    assert is_retryable_error(ValueError("nope")) is False
    assert is_retryable_error(CircuitBreakerOpenError()) is False


def test_network_kind_retryable_without_status():
    request = httpx.Request("GET", "https://api.example.com")
    err = SpooledError.from_transport_error(httpx.ConnectError("refused", request=request))
    assert err.status_code == 0
    assert is_retryable_error(err) is True


def test_breaker_failure_classification():
    assert counts_as_breaker_failure(_unavailable()) is True
    assert counts_as_breaker_failure(SpooledError.from_response(429, "")) is True
    assert counts_as_breaker_failure(SpooledError.from_response(404, "")) is False
    assert counts_as_breaker_failure(_http_status_error(401)) is False
    assert counts_as_breaker_failure(TimeoutError()) is True
    assert counts_as_breaker_failure(CircuitBreakerOpenError()) is False


def test_retry_after_hint():
    assert retry_after_hint(SpooledError.rate_limited(retry_after=12.0)) == 12.0
    assert retry_after_hint(_unavailable()) is None
    assert retry_after_hint(_http_status_error(503, headers={"Retry-After": "4"})) == 4.0
