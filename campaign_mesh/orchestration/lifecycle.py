from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from .enums import TaskStatus


@dataclass(slots=True)
class LifecycleEvent:
    task_id: str
    campaign_id: str
    status: TaskStatus
    agent_type: str
    at: datetime
    attempt: int = 0
    sequence: int = 0
    plan_id: str | None = None
    error: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


class TaskLifecycleLog:
    """Append-only in-memory record of task transitions, kept for scoring and audit."""

    def __init__(self, *, max_events_per_task: int = 100) -> None:
        self._events: dict[str, deque[LifecycleEvent]] = defaultdict(lambda: deque(maxlen=max_events_per_task))
        self._sequence = 0

    def record(self, event: LifecycleEvent) -> LifecycleEvent:
        self._sequence += 1
        event.sequence = self._sequence
        self._events[event.task_id].append(event)
        return event

    def history(self, task_id: str) -> list[LifecycleEvent]:
        return list(self._events.get(task_id, ()))

    @property
    def events(self) -> Iterable[LifecycleEvent]:
        merged = [event for bucket in self._events.values() for event in bucket]
        return sorted(merged, key=lambda event: event.sequence)
