"""Progress events emitted by the orchestration loop."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

EventType = Literal[
    "iteration_started",
    "capability_invoked",
    "capability_result",
    "context_warning",
    "checkpoint",
    "completed",
    "failed",
    "status",
    "error",
    "approval_required",
    "subagent_started",
    "subagent_completed",
    "think",
    "todo_list",
]


class ProgressEvent(BaseModel):
    type: EventType
    task_id: str
    iteration: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


EventSink = Callable[[ProgressEvent], None]


class EventEmitter:
    """Fans events out to caller-supplied sinks.

    A failing sink must never break the loop, so sink errors are logged and
    dropped.
    """

    def __init__(self, task_id: str, sinks: Iterable[EventSink | None] = ()) -> None:
        self.task_id = task_id
        self.iteration: int | None = None
        self._sinks = [sink for sink in sinks if sink is not None]

    def emit(self, event_type: EventType, data: dict[str, Any] | None = None) -> ProgressEvent:
        event = ProgressEvent(
            type=event_type,
            task_id=self.task_id,
            iteration=self.iteration,
            data=dict(data or {}),
        )
        for sink in self._sinks:
            try:
                sink(event)
            except Exception:  # noqa: BLE001
                logger.warning(
                    "event_sink event=error task_id=%s type=%s", self.task_id, event_type, exc_info=True
                )
        return event

    def child(self, task_id: str) -> EventEmitter:
        """An emitter for a nested task that reports to the same sinks."""
        return EventEmitter(task_id, self._sinks)


class EventLog:
    """Bounded per-task event history, readable while a task runs."""

    def __init__(self, max_events_per_task: int = 1000) -> None:
        self._max = max_events_per_task
        self._events: dict[str, deque[ProgressEvent]] = {}
        self._lock = threading.Lock()

    def __call__(self, event: ProgressEvent) -> None:
        self.append(event)

    def append(self, event: ProgressEvent) -> None:
        with self._lock:
            bucket = self._events.get(event.task_id)
            if bucket is None:
                bucket = deque(maxlen=self._max)
                self._events[event.task_id] = bucket
            bucket.append(event)

    def list(self, task_id: str, *, after: int = 0) -> list[ProgressEvent]:
        with self._lock:
            events = list(self._events.get(task_id, ()))
        return events[after:]

    def clear(self, task_id: str) -> None:
        with self._lock:
            self._events.pop(task_id, None)
