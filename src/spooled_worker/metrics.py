from __future__ import annotations

from prometheus_client import Counter, Gauge

JOBS_CLAIMED = Counter("spooled_jobs_claimed_total", "Jobs leased from the queue", ["queue"])
JOBS_COMPLETED = Counter("spooled_jobs_completed_total", "Jobs reported complete", ["queue"])
JOBS_FAILED = Counter("spooled_jobs_failed_total", "Jobs reported failed", ["queue"])
JOBS_IN_FLIGHT = Gauge("spooled_jobs_in_flight", "Jobs currently dispatched to handlers", ["queue"])
HEARTBEAT_FAILURES = Counter("spooled_worker_heartbeat_failures_total", "Failed worker heartbeats")
RETRY_ATTEMPTS = Counter("spooled_retry_attempts_total", "Retried remote calls", ["method"])
BREAKER_REJECTIONS = Counter(
    "spooled_circuit_breaker_rejections_total", "Calls rejected by an open circuit breaker"
)
BREAKER_STATE = Gauge("spooled_circuit_breaker_state", "Circuit breaker state (0 closed, 1 half-open, 2 open)")
