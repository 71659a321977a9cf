from __future__ import annotations

from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
import logging
import threading
from typing import Any, Protocol

logger = logging.getLogger(__name__)

KIND_STARTED = "started"
KIND_PROGRESS = "progress"
KIND_SUCCEEDED = "succeeded"
KIND_FAILED = "failed"
EVENT_KINDS = (KIND_STARTED, KIND_PROGRESS, KIND_SUCCEEDED, KIND_FAILED)

BACKUP_CREATED = "backup.created"
BACKUP_PROGRESS = "backup.progress"
BACKUP_COMPLETED = "backup.completed"
BACKUP_FAILED = "backup.failed"
RESTORE_STARTED = "backup.restore.started"
RESTORE_SUCCEEDED = "backup.restore.succeeded"
DELETE_STARTED = "backup.deleted.started"
DELETE_SUCCEEDED = "backup.deleted.succeeded"
DELETE_FAILED = "backup.deleted.failed"


@dataclass(frozen=True)
class LifecycleEvent:
    operation_id: str
    backup_id: int
    kind: str
    name: str
    emitted_at: datetime
    payload: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind not in EVENT_KINDS:
            raise ValueError(f"unknown event kind: {self.kind!r}")


class EventSink(Protocol):
    def emit(self, event: LifecycleEvent) -> None: ...


class EventBus:
    """Fans each event out to every subscriber.

    A subscriber that raises is logged and skipped; the remaining subscribers
    still receive the event.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Callable[[LifecycleEvent], None]] = []

    def subscribe(self, subscriber: Callable[[LifecycleEvent], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    def emit(self, event: LifecycleEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Event subscriber failed for %s on backup %s", event.name, event.backup_id)


class EventLog:
    """Keeps the most recent events for display."""

    def __init__(self, max_events: int = 200) -> None:
        if max_events <= 0:
            raise ValueError("max_events must be positive")
        self._lock = threading.Lock()
        self._events: deque[LifecycleEvent] = deque(maxlen=max_events)

    def __call__(self, event: LifecycleEvent) -> None:
        self.emit(event)

    def emit(self, event: LifecycleEvent) -> None:
        with self._lock:
            self._events.append(event)

    def events(self) -> list[LifecycleEvent]:
        with self._lock:
            return list(self._events)

    def names(self) -> list[str]:
        return [event.name for event in self.events()]

    def for_operation(self, operation_id: str) -> list[LifecycleEvent]:
        return [event for event in self.events() if event.operation_id == operation_id]
