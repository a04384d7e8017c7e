from __future__ import annotations

import random

from spooled_worker.config import BackoffConfig


def compute_delay(config: BackoffConfig, attempt: int, server_hint: float | None = None) -> float:
    """Seconds to wait before retry number ``attempt`` (0-indexed).

    A positive server hint (Retry-After, rate-limit reset) replaces the
    exponential schedule but is still capped at ``max_delay``.
    """
    if server_hint is not None and server_hint > 0:
        return min(server_hint, config.max_delay)

    delay = config.base_delay * (config.factor ** attempt)
    if config.jitter > 0:
        delay += random.uniform(-1.0, 1.0) * delay * config.jitter

    return min(max(delay, 0.0), config.max_delay)


def should_retry(config: BackoffConfig, attempt: int) -> bool:
    return attempt < config.max_retries
