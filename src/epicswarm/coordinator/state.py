"""In-memory record of the epic being executed.

Pure bookkeeping.  Callers (the scheduler) hold the lock; nothing here
awaits or decides what to dispatch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from epicswarm.protocol.models import (
    ChildStatus,
    EpicChild,
    EpicProgress,
    ExecutionSettings,
)


@dataclass(slots=True)
class EpicQueueState:
    epic_id: str | None = None
    epic_title: str | None = None
    children: list[EpicChild] = field(default_factory=list)
    settings: ExecutionSettings = field(default_factory=ExecutionSettings)
    progress: EpicProgress = field(default_factory=EpicProgress)
    running_agents: list[str] = field(default_factory=list)
    is_active: bool = False
    started_at: datetime | None = None
    is_spawning: bool = False
    spawned_sessions: dict[str, str] = field(default_factory=dict)
    last_spawn_error: str | None = None
    # Bumped on every start/reset so late spawn responses can tell they are stale.
    generation: int = 0

    def start(
        self,
        epic_id: str,
        epic_title: str,
        children: list[EpicChild],
        settings: ExecutionSettings,
    ) -> None:
        self.generation += 1
        self.epic_id = epic_id
        self.epic_title = epic_title
        self.children = children
        self.settings = settings
        self.running_agents = []
        self.is_active = True
        self.started_at = datetime.now(UTC)
        self.is_spawning = False
        self.spawned_sessions = {}
        self.last_spawn_error = None
        self.recompute_progress()

    def reset(self, default_settings: ExecutionSettings | None = None) -> None:
        self.generation += 1
        self.epic_id = None
        self.epic_title = None
        self.children = []
        self.settings = default_settings or ExecutionSettings()
        self.progress = EpicProgress()
        self.running_agents = []
        self.is_active = False
        self.started_at = None
        self.is_spawning = False
        self.spawned_sessions = {}
        self.last_spawn_error = None

    def child(self, task_id: str) -> EpicChild | None:
        for c in self.children:
            if c.id == task_id:
                return c
        return None

    def set_status(self, task_id: str, status: ChildStatus, assignee: str | None = None) -> bool:
        c = self.child(task_id)
        if c is None:
            return False
        c.status = status
        if assignee is not None:
            c.assignee = assignee
        return True

    def recompute_progress(self) -> None:
        self.progress = EpicProgress(
            completed=sum(1 for c in self.children if c.status == "completed"),
            total=len(self.children),
        )

    def add_running_agent(self, agent_name: str) -> None:
        if agent_name not in self.running_agents:
            self.running_agents.append(agent_name)

    def remove_running_agent(self, agent_name: str) -> bool:
        if agent_name in self.running_agents:
            self.running_agents.remove(agent_name)
            return True
        return False

    def record_spawn(self, task_id: str, worker_id: str | None, session_id: str | None) -> None:
        self.set_status(task_id, "in_progress", worker_id)
        if session_id:
            self.spawned_sessions[task_id] = session_id
        if worker_id:
            self.add_running_agent(worker_id)

    def children_with_status(self, status: ChildStatus) -> list[EpicChild]:
        return [c for c in self.children if c.status == status]

    def to_dict(self) -> dict[str, Any]:
        return {
            "epicId": self.epic_id,
            "epicTitle": self.epic_title,
            "isActive": self.is_active,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "settings": self.settings.to_dict(),
            "progress": {"completed": self.progress.completed, "total": self.progress.total},
            "runningAgents": list(self.running_agents),
            "spawnedSessions": dict(self.spawned_sessions),
            "lastSpawnError": self.last_spawn_error,
            "children": [c.to_dict() for c in self.children],
        }
