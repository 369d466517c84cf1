"""In-memory collaborators for tests and scenario simulation."""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field

from epicswarm.errors import BacklogError, EpicNotFoundError, SpawnError
from epicswarm.protocol.models import BACKLOG_OPEN, BacklogChild, EpicChildren, SpawnResult


@dataclass
class MockBacklogStore:
    """Backlog held in a dict.  Returns copies so callers cannot alias it."""

    epics: dict[str, EpicChildren] = field(default_factory=dict)
    fail_with: BacklogError | None = None
    call_history: list[str] = field(default_factory=list)

    @property
    def call_count(self) -> int:
        return len(self.call_history)

    def add_epic(
        self,
        epic_id: str,
        title: str,
        children: list[BacklogChild],
        status: str = BACKLOG_OPEN,
    ) -> EpicChildren:
        epic = EpicChildren(epic_id=epic_id, epic_title=title, epic_status=status, children=list(children))
        self.epics[epic_id] = epic
        return epic

    def set_child_status(self, epic_id: str, task_id: str, status: str, assignee: str | None = None) -> None:
        for child in self.epics[epic_id].children:
            if child.id == task_id:
                child.status = status
                if assignee is not None:
                    child.assignee = assignee
                return
        raise KeyError(task_id)

    def set_epic_status(self, epic_id: str, status: str) -> None:
        self.epics[epic_id].epic_status = status

    async def fetch_children(self, epic_id: str) -> EpicChildren:
        self.call_history.append(epic_id)
        if self.fail_with is not None:
            raise self.fail_with
        if epic_id not in self.epics:
            raise EpicNotFoundError(epic_id)
        return copy.deepcopy(self.epics[epic_id])


@dataclass
class MockSpawner:
    """Scripted spawner.

    ``failures`` maps task ids to an error string returned as a failed
    result; ``raise_for`` lists task ids whose spawn raises.  When
    ``release`` is set every spawn waits on it before answering.
    """

    failures: dict[str, str] = field(default_factory=dict)
    raise_for: set[str] = field(default_factory=set)
    release: asyncio.Event | None = None
    worker_prefix: str = "worker-"
    call_history: list[str] = field(default_factory=list)
    _counter: int = field(default=0, init=False)

    @property
    def call_count(self) -> int:
        return len(self.call_history)

    async def spawn(self, task_id: str) -> SpawnResult:
        self.call_history.append(task_id)
        if self.release is not None:
            await self.release.wait()
        if task_id in self.raise_for:
            raise SpawnError(f"spawn backend unavailable for {task_id}", task_id=task_id)
        if task_id in self.failures:
            return SpawnResult(success=False, task_id=task_id, error=self.failures[task_id])
        self._counter += 1
        worker = f"{self.worker_prefix}{self._counter}"
        return SpawnResult(success=True, task_id=task_id, worker_id=worker, session_id=f"jat-{worker}")
