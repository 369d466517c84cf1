"""Scheduler events and the in-process bus that carries them.

The dispatcher and :class:`~epicswarm.coordinator.epic_queue.EpicScheduler`
emit; the CLI echo, the simulation report and the optional JSONL log
consume.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable

from epicswarm.protocol.io import append_jsonl

logger = logging.getLogger(__name__)

DISPATCH_STARTED = "dispatch_started"
DISPATCH_SUCCEEDED = "dispatch_succeeded"
DISPATCH_FAILED = "dispatch_failed"
BATCH_COMPLETED = "batch_completed"
EPIC_LAUNCHED = "epic_launched"
LAUNCH_FAILED = "launch_failed"
TASK_COMPLETED = "task_completed"
EPIC_STOPPED = "epic_stopped"
EPIC_RESTORED = "epic_restored"
EPIC_RECONCILED = "epic_reconciled"
EPIC_CLOSED_EXTERNALLY = "epic_closed_externally"

Subscriber = Callable[["SwarmEvent"], Any]


@dataclass(slots=True)
class SwarmEvent:
    event_type: str
    timestamp: float = field(default_factory=time.time)
    epic_id: str = ""
    task_id: str = ""
    worker_id: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class EventBus:
    """Fan events out to subscribers, keep a bounded history, optionally log to JSONL.

    A subscriber registered with event types only sees those types.
    Subscriber and log failures are logged and never reach the emitter.
    """

    def __init__(self, persist_path: str | Path | None = None, *, max_history: int = 10_000) -> None:
        self._subscribers: list[tuple[Subscriber, frozenset[str]]] = []
        self._persist_path = Path(persist_path) if persist_path else None
        self._history: deque[SwarmEvent] = deque(maxlen=max_history)

    def emit(self, event: SwarmEvent) -> None:
        self._history.append(event)

        for callback, types in list(self._subscribers):
            if types and event.event_type not in types:
                continue
            try:
                callback(event)
            except Exception:
                logger.warning("Subscriber %r failed on %s", callback, event.event_type, exc_info=True)

        if self._persist_path is not None:
            try:
                append_jsonl(self._persist_path, event.to_dict())
            except OSError as exc:
                logger.warning("Cannot append event to %s: %s", self._persist_path, exc)

    def subscribe(self, callback: Subscriber, *event_types: str) -> None:
        self._subscribers.append((callback, frozenset(event_types)))

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers = [(cb, types) for cb, types in self._subscribers if cb is not callback]

    @property
    def persist_path(self) -> Path | None:
        return self._persist_path

    @property
    def history(self) -> list[SwarmEvent]:
        return list(self._history)

    def recent(self, n: int = 20) -> list[SwarmEvent]:
        """Return the *n* most recent events, oldest first."""
        if n <= 0:
            return []
        return list(self._history)[-n:]

    def of_type(self, event_type: str) -> list[SwarmEvent]:
        return [e for e in self._history if e.event_type == event_type]
