"""In-process circuit breaker guarding calls to the queue API.

The breaker has three states:
- CLOSED: normal operation, consecutive failures are counted
- OPEN: tripped, calls fail fast with CircuitBreakerOpenError
- HALF_OPEN: probing recovery, one call at a time is admitted

A call's outcome only counts against the state it was admitted under;
calls still in flight across a transition are ignored when they finish.

All state is mutated under a single lock per breaker instance.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, TypeVar

from spooled_worker.config import CircuitBreakerConfig
from spooled_worker.engine.classify import counts_as_breaker_failure
from spooled_worker.errors import CircuitBreakerOpenError
from spooled_worker.metrics import BREAKER_REJECTIONS, BREAKER_STATE

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


@dataclass(frozen=True)
class CircuitBreakerStats:
    state: str
    failure_count: int
    success_count: int
    opened_at: float | None
    timeout: float

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class _Admission:
    generation: int
    probe: bool


class CircuitBreaker:
    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        is_failure: Callable[[BaseException], bool] = counts_as_breaker_failure,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config or CircuitBreakerConfig()
        self._is_failure = is_failure
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: float | None = None
        self._probe_in_flight = False
        # bumped on every transition; outcomes are only applied to the generation they were admitted in
        self._generation = 0

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._check_timeout()
            return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    @property
    def opened_at(self) -> float | None:
        return self._opened_at

    def is_allowed(self) -> bool:
        """Whether a call made now would be let through (does not reserve the probe slot)."""
        if not self._config.enabled:
            return True
        with self._lock:
            self._check_timeout()
            if self._state is CircuitState.OPEN:
                return False
            return not (self._state is CircuitState.HALF_OPEN and self._probe_in_flight)

    def execute(self, fn: Callable[[], T]) -> T:
        if not self._config.enabled:
            return fn()

        admission = self._acquire()
        try:
            result = fn()
        except Exception as exc:
            if self._is_failure(exc):
                self._settle(admission, success=False)
            else:
                self._release_probe(admission)
            raise
        except BaseException:
            self._release_probe(admission)
            raise
        self._settle(admission, success=True)
        return result

    def record_success(self) -> None:
        """Record a success against the current state, outside of ``execute``."""
        if not self._config.enabled:
            return
        with self._lock:
            self._check_timeout()
            self._probe_in_flight = False
            self._apply_success()

    def record_failure(self) -> None:
        """Record a failure against the current state, outside of ``execute``."""
        if not self._config.enabled:
            return
        with self._lock:
            self._check_timeout()
            self._probe_in_flight = False
            self._apply_failure()

    def reset(self) -> None:
        with self._lock:
            self._transition(CircuitState.CLOSED)
        logger.info("circuit_breaker.reset")

    def stats(self) -> CircuitBreakerStats:
        with self._lock:
            self._check_timeout()
            return CircuitBreakerStats(
                state=self._state.value,
                failure_count=self._failure_count,
                success_count=self._success_count,
                opened_at=self._opened_at,
                timeout=self._config.timeout,
            )

    def _acquire(self) -> _Admission:
        """Admit a call or raise CircuitBreakerOpenError."""
        with self._lock:
            self._check_timeout()
            if self._state is CircuitState.CLOSED:
                return _Admission(self._generation, probe=False)
            if self._state is CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                return _Admission(self._generation, probe=True)
            BREAKER_REJECTIONS.inc()
            raise CircuitBreakerOpenError(
                "Circuit breaker is open",
                state=self._state.value,
                failure_count=self._failure_count,
                opened_at=self._opened_at,
                timeout=self._config.timeout,
            )

    def _settle(self, admission: _Admission, *, success: bool) -> None:
        with self._lock:
            self._check_timeout()
            if admission.generation != self._generation:
                # admitted under an earlier state
                logger.debug(
                    "circuit_breaker.stale_outcome success=%s admitted=%d current=%d",
                    success, admission.generation, self._generation,
                )
                return
            if admission.probe:
                self._probe_in_flight = False
            if success:
                self._apply_success()
            else:
                self._apply_failure()

    def _release_probe(self, admission: _Admission) -> None:
        if not admission.probe:
            return
        with self._lock:
            if admission.generation == self._generation:
                self._probe_in_flight = False

    def _apply_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self._config.success_threshold:
                self._transition(CircuitState.CLOSED)
        elif self._state is CircuitState.CLOSED:
            self._failure_count = 0

    def _apply_failure(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif self._state is CircuitState.CLOSED:
            self._failure_count += 1
            if self._failure_count >= self._config.failure_threshold:
                self._transition(CircuitState.OPEN)

    def _check_timeout(self) -> None:
        if self._state is CircuitState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self._config.timeout:
                self._transition(CircuitState.HALF_OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        previous = self._state
        self._generation += 1
        self._probe_in_flight = False
        self._state = new_state
        if new_state is CircuitState.OPEN:
            self._opened_at = self._clock()
            self._success_count = 0
        elif new_state is CircuitState.HALF_OPEN:
            self._opened_at = None
            self._failure_count = 0
            self._success_count = 0
        else:
            self._failure_count = 0
            self._success_count = 0
            self._opened_at = None
        BREAKER_STATE.set(_STATE_GAUGE[new_state])
        if previous is not new_state:
            logger.warning("circuit_breaker.transition from=%s to=%s", previous.value, new_state.value)
