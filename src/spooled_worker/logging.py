from __future__ import annotations

import json
import logging
import re
import sys
from typing import Any


class RedactingFilter(logging.Filter):
    """Strips credentials from log records."""

    PATTERNS = [
        (re.compile(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+"), "Bearer [TOKEN-REDACTED]"),
        (re.compile(r"(?i)(authorization[\"']?\s*[:=]\s*[\"']?)[^\s\"',}]+"), r"\1[REDACTED]"),
        (re.compile(r"(?i)(api[_-]?key[\"']?\s*[:=]\s*[\"']?)[^\s\"',}]+"), r"\1[REDACTED]"),
        (re.compile(r"\b(?:sk|pk|rk)_(?:live|test)_[A-Za-z0-9]{8,}\b"), "[API-KEY-REDACTED]"),
    ]

    def __init__(self, additional_terms: list[str] | None = None):
        super().__init__()
        self._additional = additional_terms or []

    def set_additional_terms(self, terms: list[str]) -> None:
        self._additional = [t for t in terms if t and len(t) > 2]

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        for pattern, replacement in self.PATTERNS:
            msg = pattern.sub(replacement, msg)
        for term in self._additional:
            if term and len(term) > 2:
                msg = msg.replace(term, "[SECRET-REDACTED]")
        record.msg = msg
        record.args = ()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        job_id = getattr(record, "job_id", None)
        if job_id is not None:
            payload["job_id"] = job_id
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


_redacting_filter = RedactingFilter()


def configure_logging(redact: bool = True, level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    if redact:
        # handler-level so records from child loggers are scrubbed too
        handler.addFilter(_redacting_filter)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level.upper())
    root.addHandler(handler)


def set_redaction_terms(terms: list[str]) -> None:
    """Add secrets (API keys, tokens) to the global redaction filter."""
    _redacting_filter.set_additional_terms(terms)
