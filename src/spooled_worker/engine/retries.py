from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from spooled_worker.config import BackoffConfig
from spooled_worker.engine.backoff import compute_delay, should_retry
from spooled_worker.engine.classify import is_idempotent_method, is_retryable_error, retry_after_hint
from spooled_worker.metrics import RETRY_ATTEMPTS

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExecutor:
    """Re-runs a zero-argument call while the failure is transient and the method is safe to repeat."""

    def __init__(self, config: BackoffConfig | None = None, *, sleep: Callable[[float], None] = time.sleep):
        self._config = config or BackoffConfig()
        self._sleep = sleep

    @property
    def config(self) -> BackoffConfig:
        return self._config

    def should_retry(self, exc: BaseException, method: str, attempt: int, force_retry: bool = False) -> bool:
        if not should_retry(self._config, attempt):
            return False
        if not force_retry and not is_idempotent_method(method):
            return False
        return is_retryable_error(exc)

    def execute(self, fn: Callable[[], T], method: str = "GET", force_retry: bool = False) -> T:
        attempt = 0
        while True:
            try:
                return fn()
            except Exception as exc:
                if not self.should_retry(exc, method, attempt, force_retry):
                    raise

                delay = compute_delay(self._config, attempt, retry_after_hint(exc))
                logger.warning(
                    "retry.scheduled method=%s attempt=%d/%d delay=%.3fs error=%s",
                    method.upper(), attempt + 1, self._config.max_retries, delay, str(exc)[:200],
                )
                RETRY_ATTEMPTS.labels(method=method.upper()).inc()
                if delay > 0:
                    self._sleep(delay)
                attempt += 1
