"""Queue worker: leases jobs, dispatches them to a handler and reports outcomes.

Lifecycle::

    idle --start()--> starting --registered--> running --stop()--> stopping --drained--> stopped
                          \\________________ unhandled failure ______________/--> error

``start()`` blocks the calling thread for as long as the poll loop runs.
Handlers execute synchronously inside the loop; capacity is the number of
jobs claimed per pass, never parallel handler threads.
"""
from __future__ import annotations

import logging
import signal
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from spooled_worker.client import QueueApi, ResilientQueueClient
from spooled_worker.config import WorkerConfig
from spooled_worker.engine.context import JobContext
from spooled_worker.engine.events import EventHandler, EventRegistry, Subscription, WorkerEvent
from spooled_worker.metrics import (
    HEARTBEAT_FAILURES,
    JOBS_CLAIMED,
    JOBS_COMPLETED,
    JOBS_FAILED,
    JOBS_IN_FLIGHT,
)
from spooled_worker.schemas.models import ClaimedJob

logger = logging.getLogger(__name__)

MAX_CLAIM_BATCH = 10
DRAIN_POLL_INTERVAL = 0.1

JobHandler = Callable[[JobContext], Any]


class WorkerState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class WorkerStateError(RuntimeError):
    """Lifecycle method called in a state that does not allow it."""


@dataclass
class ActiveJob:
    job: ClaimedJob
    started_at: datetime
    cancelled: bool = False


class Worker:
    def __init__(
        self,
        client: ResilientQueueClient | QueueApi,
        config: WorkerConfig,
        *,
        log: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not isinstance(client, ResilientQueueClient):
            client = ResilientQueueClient(client)
        self._client = client
        self._config = config
        self.logger = log or logger
        self._clock = clock

        self._state = WorkerState.IDLE
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._loop_thread: threading.Thread | None = None

        self._handler: JobHandler | None = None
        self._events = EventRegistry()

        self._active_jobs: dict[str, ActiveJob] = {}
        self._active_lock = threading.Lock()
        self._worker_id: str | None = None
        self._completed_jobs = 0
        self._failed_jobs = 0
        self._last_heartbeat: float | None = None
        self.last_error: BaseException | None = None

    # -- State / counters -----------------------------------------------------

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def config(self) -> WorkerConfig:
        return self._config

    @property
    def client(self) -> ResilientQueueClient:
        return self._client

    @property
    def worker_id(self) -> str | None:
        return self._worker_id

    @property
    def active_job_count(self) -> int:
        with self._active_lock:
            return len(self._active_jobs)

    @property
    def completed_jobs(self) -> int:
        return self._completed_jobs

    @property
    def failed_jobs(self) -> int:
        return self._failed_jobs

    def active_jobs(self) -> tuple[ActiveJob, ...]:
        with self._active_lock:
            return tuple(self._active_jobs.values())

    def is_shutting_down(self) -> bool:
        return self._state in (WorkerState.STOPPING, WorkerState.STOPPED)

    # -- Registration -----------------------------------------------------------

    def process(self, handler: JobHandler) -> None:
        if self._state is not WorkerState.IDLE:
            raise WorkerStateError("Cannot set handler after worker has started")
        self._handler = handler

    def on(self, event: WorkerEvent | str, handler: EventHandler) -> Subscription:
        return self._events.on(event, handler)

    def off(self, event: WorkerEvent | str, handler: Subscription | EventHandler) -> None:
        self._events.off(event, handler)

    # -- Lifecycle --------------------------------------------------------------

    def start(self) -> None:
        with self._state_lock:
            if self._state is not WorkerState.IDLE:
                raise WorkerStateError(f"Cannot start worker in state: {self._state.value}")
            if self._handler is None:
                raise WorkerStateError("No job handler registered. Call process() first.")
            self._state = WorkerState.STARTING
        self._loop_thread = threading.current_thread()
        self._stop_event.clear()
        self.logger.info("worker.starting queue=%s", self._config.queue_name)

        try:
            metadata = dict(self._config.metadata)
            metadata.setdefault("worker_type", self._config.worker_type)
            if self._config.version:
                metadata.setdefault("version", self._config.version)
            registration = self._client.register_worker(
                [self._config.queue_name],
                self._config.display_name,
                self._config.concurrency,
                metadata,
            )
            self._worker_id = registration.id
            self.logger.info("worker.registered worker=%s", self._worker_id)

            with self._state_lock:
                if self._state is WorkerState.STARTING:
                    self._state = WorkerState.RUNNING
            self._emit(WorkerEvent.STARTED, {"worker_id": self._worker_id, "queue_name": self._config.queue_name})

            self._run_poll_loop()
        except Exception as exc:
            self._state = WorkerState.ERROR
            self.last_error = exc
            self.logger.exception("worker.failed queue=%s", self._config.queue_name)
            self._emit(WorkerEvent.ERROR, {"error": exc})
            raise
        finally:
            self._cleanup()

    def start_background(self) -> threading.Thread:
        """Run ``start()`` on a daemon thread; failures land on ``last_error``."""

        def _run() -> None:
            try:
                self.start()
            except Exception:
                pass  # already logged and recorded by start()

        thread = threading.Thread(target=_run, daemon=True, name=f"spooled-worker-{self._config.queue_name}")
        thread.start()
        return thread

    def stop(self) -> None:
        with self._state_lock:
            if self._state is not WorkerState.RUNNING:
                return
            self._state = WorkerState.STOPPING
        self.logger.info("worker.stopping worker=%s active=%d", self._worker_id, self.active_job_count)

        with self._active_lock:
            for active in self._active_jobs.values():
                active.cancelled = True
        self._stop_event.set()

        if threading.current_thread() is self._loop_thread:
            # called from a handler or a signal on the loop thread; cleanup finishes the transition
            return

        self._wait_for_active_jobs()
        self._state = WorkerState.STOPPED

    def install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            self.logger.warning("worker.signal_handlers_skipped reason=not_main_thread")
            return

        def _handle(signum, _frame) -> None:
            self.logger.info("worker.signal_received signal=%s", signal.Signals(signum).name)
            self.stop()

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)

    # -- Poll loop --------------------------------------------------------------

    def _run_poll_loop(self) -> None:
        queue = self._config.queue_name
        while self._state is WorkerState.RUNNING:
            self._maybe_heartbeat()

            available = self._config.concurrency - self.active_job_count
            if available <= 0:
                self._wait(self._config.poll_interval)
                continue

            try:
                jobs = self._client.claim_jobs(
                    queue,
                    self._worker_id or "",
                    min(available, MAX_CLAIM_BATCH),
                    self._config.lease_duration,
                )
            except Exception as exc:
                self.logger.warning("worker.poll_failed queue=%s error=%s", queue, exc)
                self._emit(WorkerEvent.ERROR, {"error": exc})
                self._wait(self._config.poll_interval)
                continue

            for index, job in enumerate(jobs):
                if self._state is not WorkerState.RUNNING:
                    self.logger.info(
                        "worker.dispatch_skipped jobs=%d reason=stopping (leases will expire)",
                        len(jobs) - index,
                    )
                    break
                self._process_job(job)

            if not jobs:
                self._wait(self._config.poll_interval)

    def _process_job(self, job: ClaimedJob) -> None:
        queue = job.queue_name or self._config.queue_name
        self._emit(WorkerEvent.JOB_CLAIMED, {"job_id": job.id, "queue_name": queue, "job": job})
        JOBS_CLAIMED.labels(queue=queue).inc()

        active = ActiveJob(job=job, started_at=datetime.now(timezone.utc))
        with self._active_lock:
            self._active_jobs[job.id] = active
        JOBS_IN_FLIGHT.labels(queue=queue).inc()

        self._emit(WorkerEvent.JOB_STARTED, {"job_id": job.id, "queue_name": queue, "job": job})
        ctx = JobContext(job, self)

        try:
            result = self._handler(ctx)
            if active.cancelled:
                self.logger.info("worker.job_cancelled job=%s", job.id)
                return
            self._complete_job(job, queue, ctx.result if result is None else result)
        except Exception as exc:
            if active.cancelled:
                self.logger.info("worker.job_cancelled job=%s error=%s", job.id, exc)
                return
            self._fail_job(job, queue, str(exc) or type(exc).__name__)
        finally:
            with self._active_lock:
                self._active_jobs.pop(job.id, None)
            JOBS_IN_FLIGHT.labels(queue=queue).dec()

    def _complete_job(self, job: ClaimedJob, queue: str, result: Any) -> None:
        if not self._worker_id:
            return
        payload = normalize_result(result)
        try:
            self._client.complete_job(job.id, self._worker_id, payload)
        except Exception as exc:
            self.logger.warning("worker.complete_failed job=%s error=%s", job.id, exc)
            return
        self._completed_jobs += 1
        JOBS_COMPLETED.labels(queue=queue).inc()
        self.logger.debug("worker.job_completed job=%s", job.id)
        self._emit(WorkerEvent.JOB_COMPLETED, {"job_id": job.id, "queue_name": queue, "result": payload})

    def _fail_job(self, job: ClaimedJob, queue: str, error: str) -> None:
        if not self._worker_id:
            return
        will_retry = job.retry_count < job.max_retries
        try:
            self._client.fail_job(job.id, self._worker_id, error)
        except Exception as exc:
            self.logger.warning("worker.fail_report_failed job=%s error=%s", job.id, exc)
            return
        self._failed_jobs += 1
        JOBS_FAILED.labels(queue=queue).inc()
        self.logger.info("worker.job_failed job=%s will_retry=%s error=%s", job.id, will_retry, error[:200])
        self._emit(
            WorkerEvent.JOB_FAILED,
            {"job_id": job.id, "queue_name": queue, "error": error, "will_retry": will_retry},
        )

    def _maybe_heartbeat(self) -> None:
        if not self._worker_id:
            return
        now = self._clock()
        if self._last_heartbeat is not None and now - self._last_heartbeat < self._config.heartbeat_interval:
            return
        try:
            self._client.heartbeat(self._worker_id, self.active_job_count, "healthy")
        except Exception as exc:
            HEARTBEAT_FAILURES.inc()
            self.logger.warning("worker.heartbeat_failed worker=%s error=%s", self._worker_id, exc)
            return
        self._last_heartbeat = now

    def _wait_for_active_jobs(self) -> None:
        remaining = self.active_job_count
        if remaining == 0:
            return
        self.logger.info("worker.draining active=%d timeout=%.1fs", remaining, self._config.shutdown_timeout)

        # real time; the injected clock only gates heartbeats
        deadline = time.monotonic() + self._config.shutdown_timeout
        while self.active_job_count > 0:
            left = deadline - time.monotonic()
            if left <= 0:
                break
            time.sleep(min(DRAIN_POLL_INTERVAL, left))

        remaining = self.active_job_count
        if remaining > 0:
            self.logger.warning("worker.shutdown_timeout active=%d", remaining)

    def _wait(self, seconds: float) -> None:
        if seconds > 0:
            self._stop_event.wait(seconds)

    def _cleanup(self) -> None:
        if self._worker_id is not None:
            try:
                self._client.deregister_worker(self._worker_id)
                self.logger.info("worker.deregistered worker=%s", self._worker_id)
            except Exception as exc:
                self.logger.warning("worker.deregister_failed worker=%s error=%s", self._worker_id, exc)

        with self._state_lock:
            if self._state is WorkerState.STOPPING and self.active_job_count == 0:
                self._state = WorkerState.STOPPED
        reason = "error" if self._state is WorkerState.ERROR else "graceful"

        self._emit(
            WorkerEvent.STOPPED,
            {
                "worker_id": self._worker_id or "",
                "reason": reason,
                "completed_jobs": self._completed_jobs,
                "failed_jobs": self._failed_jobs,
            },
        )
        self._worker_id = None

    def _emit(self, event: WorkerEvent, data: dict[str, Any]) -> None:
        self._events.emit(event, data)


def normalize_result(result: Any) -> dict[str, Any] | None:
    if result is None:
        return None
    if isinstance(result, dict):
        return result
    return {"result": result}
