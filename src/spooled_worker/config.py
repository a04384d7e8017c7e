from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass(frozen=True)
class BackoffConfig:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    factor: float = 2.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("Missing/invalid config.retry.max_retries")
        if self.base_delay < 0:
            raise ValueError("Missing/invalid config.retry.base_delay")
        if self.max_delay < 0:
            raise ValueError("Missing/invalid config.retry.max_delay")
        if self.factor <= 1:
            raise ValueError("config.retry.factor must be > 1")
        if not 0 <= self.jitter <= 1:
            raise ValueError("config.retry.jitter must be between 0 and 1")

    @classmethod
    def disabled(cls) -> BackoffConfig:
        return cls(max_retries=0)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    enabled: bool = True
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.failure_threshold <= 0:
            raise ValueError("config.circuit_breaker.failure_threshold must be > 0")
        if self.success_threshold <= 0:
            raise ValueError("config.circuit_breaker.success_threshold must be > 0")
        if self.timeout < 0:
            raise ValueError("Missing/invalid config.circuit_breaker.timeout")

    @classmethod
    def disabled(cls) -> CircuitBreakerConfig:
        return cls(enabled=False)


@dataclass(frozen=True)
class WorkerConfig:
    queue_name: str
    concurrency: int = 5
    poll_interval: float = 1.0
    lease_duration: int = 30
    shutdown_timeout: float = 30.0
    heartbeat_interval: float = 15.0
    hostname: str | None = None
    worker_type: str = "python"
    version: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.queue_name:
            raise ValueError("Missing/invalid config.worker.queue_name")
        if self.concurrency <= 0:
            raise ValueError("config.worker.concurrency must be > 0")
        if self.poll_interval < 0:
            raise ValueError("Missing/invalid config.worker.poll_interval")
        if self.lease_duration <= 0:
            raise ValueError("config.worker.lease_duration must be > 0")
        if self.shutdown_timeout < 0:
            raise ValueError("Missing/invalid config.worker.shutdown_timeout")

    @property
    def display_name(self) -> str:
        return self.hostname or socket.gethostname() or "python-worker"


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    redact: bool = True


@dataclass(frozen=True)
class ClientConfig:
    worker: WorkerConfig
    retry: BackoffConfig = field(default_factory=BackoffConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    force_retry: bool = False


DEFAULT_CONFIG_PATH = Path(os.getenv("SPOOLED_WORKER_CONFIG", "/etc/spooled-worker/config.yaml"))


def _resolve_env(value: str) -> str:
    if not value.startswith("env:"):
        return value
    key = value[4:].strip()
    if not key:
        raise ValueError("Invalid env ref: empty key")
    resolved = os.getenv(key)
    if resolved is None or not resolved.strip():
        raise ValueError(f"Environment variable '{key}' referenced in config is missing/empty")
    return resolved.strip()


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"config.{key} must be an object")
    return value


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Missing/invalid config.{key}")
    if not value.strip():
        return None
    return _resolve_env(value.strip())


def _coerce_int(value: Any, key: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(f"Missing/invalid config.{key}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        resolved = _resolve_env(value.strip())
        try:
            return int(resolved)
        except ValueError as exc:
            raise ValueError(f"Missing/invalid config.{key}") from exc
    raise ValueError(f"Missing/invalid config.{key}")


def _coerce_float(value: Any, key: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(f"Missing/invalid config.{key}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        resolved = _resolve_env(value.strip())
        try:
            return float(resolved)
        except ValueError as exc:
            raise ValueError(f"Missing/invalid config.{key}") from exc
    raise ValueError(f"Missing/invalid config.{key}")


def _coerce_bool(value: Any, key: str, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        resolved = _resolve_env(value.strip()).lower()
        if resolved in {"true", "1", "yes", "on"}:
            return True
        if resolved in {"false", "0", "no", "off"}:
            return False
    raise ValueError(f"Missing/invalid config.{key}")


def parse_config(raw: dict[str, Any]) -> ClientConfig:
    if not isinstance(raw, dict):
        raise ValueError("Config must be an object")

    retry_raw = _section(raw, "retry")
    retry = BackoffConfig(
        max_retries=_coerce_int(retry_raw.get("max_retries"), "retry.max_retries", 3),
        base_delay=_coerce_float(retry_raw.get("base_delay"), "retry.base_delay", 1.0),
        max_delay=_coerce_float(retry_raw.get("max_delay"), "retry.max_delay", 30.0),
        factor=_coerce_float(retry_raw.get("factor"), "retry.factor", 2.0),
        jitter=_coerce_float(retry_raw.get("jitter"), "retry.jitter", 0.1),
    )

    breaker_raw = _section(raw, "circuit_breaker")
    circuit_breaker = CircuitBreakerConfig(
        enabled=_coerce_bool(breaker_raw.get("enabled"), "circuit_breaker.enabled", True),
        failure_threshold=_coerce_int(
            breaker_raw.get("failure_threshold"), "circuit_breaker.failure_threshold", 5
        ),
        success_threshold=_coerce_int(
            breaker_raw.get("success_threshold"), "circuit_breaker.success_threshold", 2
        ),
        timeout=_coerce_float(breaker_raw.get("timeout"), "circuit_breaker.timeout", 30.0),
    )

    worker_raw = _section(raw, "worker")
    queue_name = _optional_str(worker_raw, "queue_name")
    if not queue_name:
        raise ValueError("Missing/invalid config.worker.queue_name")
    metadata = worker_raw.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValueError("config.worker.metadata must be an object")
    worker = WorkerConfig(
        queue_name=queue_name,
        concurrency=_coerce_int(worker_raw.get("concurrency"), "worker.concurrency", 5),
        poll_interval=_coerce_float(worker_raw.get("poll_interval"), "worker.poll_interval", 1.0),
        lease_duration=_coerce_int(worker_raw.get("lease_duration"), "worker.lease_duration", 30),
        shutdown_timeout=_coerce_float(
            worker_raw.get("shutdown_timeout"), "worker.shutdown_timeout", 30.0
        ),
        heartbeat_interval=_coerce_float(
            worker_raw.get("heartbeat_interval"), "worker.heartbeat_interval", 15.0
        ),
        hostname=_optional_str(worker_raw, "hostname"),
        worker_type=_optional_str(worker_raw, "worker_type") or "python",
        version=_optional_str(worker_raw, "version"),
        metadata=dict(metadata),
    )

    logging_raw = _section(raw, "logging")
    log_config = LoggingConfig(
        level=(_optional_str(logging_raw, "level") or "INFO").upper(),
        redact=_coerce_bool(logging_raw.get("redact"), "logging.redact", True),
    )

    return ClientConfig(
        worker=worker,
        retry=retry,
        circuit_breaker=circuit_breaker,
        logging=log_config,
        force_retry=_coerce_bool(raw.get("force_retry"), "force_retry", False),
    )


def load_config(path: Path | None = None) -> ClientConfig:
    cfg_path = path or DEFAULT_CONFIG_PATH
    raw = yaml.safe_load(cfg_path.read_text(encoding="utf-8"))
    return parse_config(raw)
