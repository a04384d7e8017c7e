from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ClaimedJob(BaseModel):
    """Snapshot of a leased job as returned by claim_jobs."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    queue_name: str = Field(default="", validation_alias=AliasChoices("queue_name", "queueName", "queue"))
    payload: dict[str, Any] = Field(default_factory=dict)
    retry_count: int = Field(default=0, ge=0, validation_alias=AliasChoices("retry_count", "retryCount"))
    max_retries: int = Field(default=3, ge=0, validation_alias=AliasChoices("max_retries", "maxRetries"))
    timeout_seconds: int = Field(
        default=300, validation_alias=AliasChoices("timeout_seconds", "timeoutSeconds")
    )
    lease_expires_at: str | None = Field(
        default=None, validation_alias=AliasChoices("lease_expires_at", "leaseExpiresAt")
    )
    metadata: dict[str, Any] = Field(default_factory=dict)


class WorkerRegistration(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    heartbeat_interval_secs: int | None = Field(
        default=None, validation_alias=AliasChoices("heartbeat_interval_secs", "heartbeatIntervalSecs")
    )


def as_claimed_job(value: ClaimedJob | dict[str, Any]) -> ClaimedJob:
    if isinstance(value, ClaimedJob):
        return value
    return ClaimedJob.model_validate(value)


def as_registration(value: WorkerRegistration | dict[str, Any]) -> WorkerRegistration:
    if isinstance(value, WorkerRegistration):
        return value
    return WorkerRegistration.model_validate(value)
