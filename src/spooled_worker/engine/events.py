from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], None]


class WorkerEvent(str, Enum):
    STARTED = "started"
    STOPPED = "stopped"
    ERROR = "error"
    JOB_CLAIMED = "job:claimed"
    JOB_STARTED = "job:started"
    JOB_COMPLETED = "job:completed"
    JOB_FAILED = "job:failed"


def _event_name(event: WorkerEvent | str) -> str:
    return event.value if isinstance(event, WorkerEvent) else str(event)


@dataclass(eq=False)
class Subscription:
    event: str
    handler: EventHandler
    token: int
    _registry: EventRegistry | None = field(default=None, repr=False)

    def unsubscribe(self) -> None:
        if self._registry is not None:
            self._registry.off(self.event, self)
            self._registry = None


class EventRegistry:
    """Ordered observer lists keyed by event name."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Subscription]] = {}
        self._lock = threading.Lock()
        self._tokens = itertools.count(1)

    def on(self, event: WorkerEvent | str, handler: EventHandler) -> Subscription:
        name = _event_name(event)
        sub = Subscription(event=name, handler=handler, token=next(self._tokens), _registry=self)
        with self._lock:
            self._handlers.setdefault(name, []).append(sub)
        return sub

    def off(self, event: WorkerEvent | str, handler: Subscription | EventHandler) -> None:
        """Remove one subscription, or every subscription of a plain callable."""
        name = _event_name(event)
        with self._lock:
            subs = self._handlers.get(name, [])
            if isinstance(handler, Subscription):
                self._handlers[name] = [s for s in subs if s.token != handler.token]
            else:
                self._handlers[name] = [s for s in subs if s.handler is not handler]

    def listener_count(self, event: WorkerEvent | str) -> int:
        with self._lock:
            return len(self._handlers.get(_event_name(event), []))

    def emit(self, event: WorkerEvent | str, data: dict[str, Any]) -> None:
        name = _event_name(event)
        with self._lock:
            subs = list(self._handlers.get(name, []))
        for sub in subs:
            try:
                sub.handler(data)
            except Exception:
                logger.exception("events.handler_failed event=%s", name)
