"""Tests for claimed job and registration models."""

import pytest
from pydantic import ValidationError

from spooled_worker.schemas.models import ClaimedJob, as_claimed_job, as_registration


def test_claimed_job_defaults():
    job = ClaimedJob(id="job_1")
    assert job.queue_name == ""
    assert job.payload == {}
    assert job.retry_count == 0
    assert job.max_retries == 3
    assert job.timeout_seconds == 300
    assert job.lease_expires_at is None


def test_claimed_job_accepts_camel_case():
    job = as_claimed_job(
        {
            "id": "job_1",
            "queueName": "emails",
            "payload": {"n": 1},
            "retryCount": 2,
            "maxRetries": 5,
            "timeoutSeconds": 60,
            "leaseExpiresAt": "2026-01-01T00:00:00Z",
            "unknownField": True,
        }
    )
    assert job.queue_name == "emails"
    assert job.retry_count == 2
    assert job.max_retries == 5
    assert job.timeout_seconds == 60
    assert job.lease_expires_at == "2026-01-01T00:00:00Z"


def test_claimed_job_is_frozen():
    job = ClaimedJob(id="job_1")
    with pytest.raises(ValidationError):
        job.retry_count = 4


def test_claimed_job_requires_id():
    with pytest.raises(ValidationError):
        as_claimed_job({"id": "", "queue_name": "emails"})
    with pytest.raises(ValidationError):
        as_claimed_job({"queue_name": "emails"})


def test_negative_retry_count_rejected():
    with pytest.raises(ValidationError):
        as_claimed_job({"id": "job_1", "retry_count": -1})


def test_as_registration():
    registration = as_registration({"id": "wrk_1"})
    assert registration.id == "wrk_1"
    assert registration.heartbeat_interval_secs is None
    assert as_registration(registration) is registration
