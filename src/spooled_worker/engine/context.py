from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from spooled_worker.schemas.models import ClaimedJob

if TYPE_CHECKING:
    from spooled_worker.engine.worker import Worker

logger = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


class JobContext:
    """What a handler sees of its job for the duration of one invocation.

    Cancellation is cooperative: long-running handlers should poll
    ``is_cancelled()`` and return early once the worker starts stopping.
    """

    def __init__(
        self,
        job: ClaimedJob,
        worker: Worker | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        self._job = job
        self._worker = worker
        self._metadata = dict(job.metadata if metadata is None else metadata)
        self.result: dict[str, Any] | None = None

    @property
    def job_id(self) -> str:
        return self._job.id

    @property
    def queue_name(self) -> str:
        return self._job.queue_name

    @property
    def payload(self) -> dict[str, Any]:
        return self._job.payload

    @property
    def retry_count(self) -> int:
        return self._job.retry_count

    @property
    def max_retries(self) -> int:
        return self._job.max_retries

    @property
    def metadata(self) -> dict[str, Any]:
        return self._metadata

    @property
    def is_retry(self) -> bool:
        return self._job.retry_count > 0

    @property
    def remaining_retries(self) -> int:
        return max(0, self._job.max_retries - self._job.retry_count)

    @property
    def is_last_attempt(self) -> bool:
        return self._job.retry_count >= self._job.max_retries

    is_last_retry = is_last_attempt

    def is_cancelled(self) -> bool:
        if self._worker is None:
            return False
        return self._worker.is_shutting_down()

    def is_shutting_down(self) -> bool:
        return self.is_cancelled()

    def get(self, key: str, default: Any = None) -> Any:
        return self._job.payload.get(key, default)

    def has(self, key: str) -> bool:
        return key in self._job.payload

    def get_meta(self, key: str, default: Any = None) -> Any:
        return self._metadata.get(key, default)

    def progress(self, percent: int, message: str | None = None) -> None:
        if not 0 <= percent <= 100:
            raise ValueError(f"progress percent must be between 0 and 100, got {percent}")
        self.log("info", "job.progress", percent=percent, note=message or "")

    def log(self, level: str, message: str, /, **fields: Any) -> None:
        target = self._worker.logger if self._worker is not None else logger
        text = " ".join([message, *(f"{k}={v}" for k, v in fields.items())])
        target.log(
            _LEVELS.get(level.lower(), logging.INFO),
            "%s job=%s", text, self.job_id,
            extra={"job_id": self.job_id},
        )
