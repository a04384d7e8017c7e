"""Resilient wrapper around the queue API collaborator."""
from __future__ import annotations

from typing import Any, Callable, Protocol, Sequence, TypeVar

from spooled_worker.config import BackoffConfig, CircuitBreakerConfig, ClientConfig
from spooled_worker.engine.circuit_breaker import CircuitBreaker, CircuitBreakerStats
from spooled_worker.engine.retries import RetryExecutor
from spooled_worker.schemas.models import ClaimedJob, WorkerRegistration, as_claimed_job, as_registration

T = TypeVar("T")


class QueueApi(Protocol):
    """Transport-agnostic operations the worker needs from the remote queue."""

    def claim_jobs(
        self, queue: str, worker_id: str, limit: int, lease_duration: int
    ) -> Sequence[ClaimedJob | dict[str, Any]]: ...

    def complete_job(self, job_id: str, worker_id: str, result: dict[str, Any] | None = None) -> Any: ...

    def fail_job(self, job_id: str, worker_id: str, error_message: str) -> Any: ...

    def register_worker(
        self, queues: list[str], name: str, concurrency: int, metadata: dict[str, Any]
    ) -> WorkerRegistration | dict[str, Any]: ...

    def heartbeat(self, worker_id: str, current_jobs: int, status: str) -> Any: ...

    def deregister_worker(self, worker_id: str) -> Any: ...


# HTTP verb each operation maps to in the queue API
OPERATION_METHODS = {
    "claim_jobs": "POST",
    "complete_job": "POST",
    "fail_job": "POST",
    "register_worker": "POST",
    "heartbeat": "POST",
    "deregister_worker": "POST",
}


class ResilientQueueClient:
    def __init__(
        self,
        api: QueueApi,
        *,
        retry: BackoffConfig | None = None,
        circuit_breaker: CircuitBreakerConfig | None = None,
        force_retry: bool = False,
        retry_executor: RetryExecutor | None = None,
        breaker: CircuitBreaker | None = None,
    ):
        self._api = api
        self._retry = retry_executor or RetryExecutor(retry)
        self._breaker = breaker or CircuitBreaker(circuit_breaker)
        self._force_retry = force_retry

    @classmethod
    def from_config(cls, api: QueueApi, config: ClientConfig) -> ResilientQueueClient:
        return cls(
            api,
            retry=config.retry,
            circuit_breaker=config.circuit_breaker,
            force_retry=config.force_retry,
        )

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    def reset_circuit_breaker(self) -> None:
        self._breaker.reset()

    def circuit_breaker_stats(self) -> CircuitBreakerStats:
        return self._breaker.stats()

    def call(self, operation: str, fn: Callable[[], T]) -> T:
        method = OPERATION_METHODS.get(operation, "POST")
        return self._breaker.execute(lambda: self._retry.execute(fn, method, self._force_retry))

    def claim_jobs(self, queue: str, worker_id: str, limit: int, lease_duration: int) -> list[ClaimedJob]:
        jobs = self.call(
            "claim_jobs", lambda: self._api.claim_jobs(queue, worker_id, limit, lease_duration)
        )
        return [as_claimed_job(job) for job in jobs or []]

    def complete_job(self, job_id: str, worker_id: str, result: dict[str, Any] | None = None) -> None:
        self.call("complete_job", lambda: self._api.complete_job(job_id, worker_id, result))

    def fail_job(self, job_id: str, worker_id: str, error_message: str) -> None:
        self.call("fail_job", lambda: self._api.fail_job(job_id, worker_id, error_message))

    def register_worker(
        self, queues: list[str], name: str, concurrency: int, metadata: dict[str, Any]
    ) -> WorkerRegistration:
        registration = self.call(
            "register_worker", lambda: self._api.register_worker(queues, name, concurrency, metadata)
        )
        return as_registration(registration)

    def heartbeat(self, worker_id: str, current_jobs: int, status: str = "healthy") -> None:
        self.call("heartbeat", lambda: self._api.heartbeat(worker_id, current_jobs, status))

    def deregister_worker(self, worker_id: str) -> None:
        self.call("deregister_worker", lambda: self._api.deregister_worker(worker_id))
