"""Tests for the resilient queue client wrapper."""

from unittest.mock import MagicMock

import pytest

from spooled_worker.client import ResilientQueueClient
from spooled_worker.config import BackoffConfig, CircuitBreakerConfig, ClientConfig, WorkerConfig
from spooled_worker.engine.circuit_breaker import CircuitState
from spooled_worker.engine.retries import RetryExecutor
from spooled_worker.errors import CircuitBreakerOpenError, SpooledError
from spooled_worker.schemas.models import ClaimedJob, WorkerRegistration


def _unavailable():
    return SpooledError.from_response(503, '{"message": "unavailable"}')


def _client(api, *, failure_threshold=5, force_retry=False, max_retries=3):
    sleeps = []
    executor = RetryExecutor(BackoffConfig(max_retries=max_retries, jitter=0.0), sleep=sleeps.append)
    client = ResilientQueueClient(
        api,
        circuit_breaker=CircuitBreakerConfig(failure_threshold=failure_threshold),
        force_retry=force_retry,
        retry_executor=executor,
    )
    return client, sleeps


def test_claim_jobs_converts_dicts():
    api = MagicMock()
    api.claim_jobs.return_value = [
        {"id": "job_1", "queueName": "emails", "payload": {"to": "a@example.com"}, "retryCount": 1},
        ClaimedJob(id="job_2", queue_name="emails"),
    ]
    client, _ = _client(api)

    jobs = client.claim_jobs("emails", "wrk_1", 2, 30)

    api.claim_jobs.assert_called_once_with("emails", "wrk_1", 2, 30)
    assert [j.id for j in jobs] == ["job_1", "job_2"]
    assert jobs[0].retry_count == 1
    assert jobs[0].payload == {"to": "a@example.com"}


def test_register_worker_returns_registration():
    api = MagicMock()
    api.register_worker.return_value = {"id": "wrk_1", "heartbeatIntervalSecs": 10}
    client, _ = _client(api)

    registration = client.register_worker(["emails"], "host-1", 2, {"worker_type": "python"})

    assert isinstance(registration, WorkerRegistration)
    assert registration.id == "wrk_1"
    assert registration.heartbeat_interval_secs == 10


def test_worker_operations_not_retried_by_default():
    api = MagicMock()
    api.complete_job.side_effect = [_unavailable(), None]
    client, sleeps = _client(api)

    with pytest.raises(SpooledError):
        client.complete_job("job_1", "wrk_1", {"ok": True})

    assert api.complete_job.call_count == 1
    assert sleeps == []


def test_force_retry_retries_post_operations():
    api = MagicMock()
    api.heartbeat.side_effect = [_unavailable(), None]
    client, sleeps = _client(api, force_retry=True)

    client.heartbeat("wrk_1", 0, "healthy")

    assert api.heartbeat.call_count == 2
    assert sleeps == [1.0]


def test_breaker_wraps_retries():
    api = MagicMock()
    api.fail_job.side_effect = _unavailable()
    client, sleeps = _client(api, failure_threshold=2, force_retry=True, max_retries=2)

    # one breaker failure per exhausted retry sequence
    with pytest.raises(SpooledError):
        client.fail_job("job_1", "wrk_1", "boom")
    assert api.fail_job.call_count == 3
    assert client.circuit_breaker.state is CircuitState.CLOSED

    with pytest.raises(SpooledError):
        client.fail_job("job_1", "wrk_1", "boom")
    assert client.circuit_breaker.state is CircuitState.OPEN

    with pytest.raises(CircuitBreakerOpenError):
        client.fail_job("job_1", "wrk_1", "boom")
    assert api.fail_job.call_count == 6


def test_reset_circuit_breaker():
    api = MagicMock()
    api.deregister_worker.side_effect = _unavailable()
    client, _ = _client(api, failure_threshold=1)

    with pytest.raises(SpooledError):
        client.deregister_worker("wrk_1")
    assert client.circuit_breaker_stats().state == "open"

    client.reset_circuit_breaker()
    assert client.circuit_breaker_stats().state == "closed"


def test_from_config():
    api = MagicMock()
    config = ClientConfig(
        worker=WorkerConfig(queue_name="emails"),
        circuit_breaker=CircuitBreakerConfig(failure_threshold=7),
        force_retry=True,
    )
    client = ResilientQueueClient.from_config(api, config)
    assert client.circuit_breaker.config.failure_threshold == 7
