"""Wire and state types shared by the scheduler and its collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Literal, get_args

ChildStatus = Literal["pending", "ready", "in_progress", "completed", "blocked"]
ExecutionMode = Literal["parallel", "sequential"]
ReviewThreshold = Literal["all", "p0", "p0-p1", "p0-p2", "none"]

CHILD_STATUSES: tuple[str, ...] = get_args(ChildStatus)
EXECUTION_MODES: tuple[str, ...] = get_args(ExecutionMode)
REVIEW_THRESHOLDS: tuple[str, ...] = get_args(ReviewThreshold)

# Backlog-side task status that means "done".
BACKLOG_CLOSED = "closed"
BACKLOG_IN_PROGRESS = "in_progress"
BACKLOG_OPEN = "open"


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(slots=True)
class ExecutionSettings:
    mode: ExecutionMode = "parallel"
    review_threshold: ReviewThreshold = "p0-p1"
    max_concurrent: int = 4
    auto_spawn: bool = True

    def merged(self, **overrides: Any) -> ExecutionSettings:
        """Return a copy with the non-None *overrides* applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "reviewThreshold": self.review_threshold,
            "maxConcurrent": self.max_concurrent,
            "autoSpawn": self.auto_spawn,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any], base: ExecutionSettings | None = None) -> ExecutionSettings:
        """Build settings from camelCase or snake_case keys, falling back to *base*."""
        base = base or cls()

        def pick(*keys: str) -> Any:
            for key in keys:
                if key in raw and raw[key] is not None:
                    return raw[key]
            return None

        return base.merged(
            mode=pick("mode", "executionMode", "execution_mode"),
            review_threshold=pick("reviewThreshold", "review_threshold"),
            max_concurrent=pick("maxConcurrent", "max_concurrent"),
            auto_spawn=pick("autoSpawn", "auto_spawn"),
        )


@dataclass(slots=True)
class EpicChild:
    id: str
    title: str
    priority: int
    status: ChildStatus = "pending"
    assignee: str | None = None
    depends_on: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "priority": self.priority,
            "status": self.status,
            "assignee": self.assignee,
            "dependsOn": list(self.depends_on),
        }


@dataclass(slots=True)
class EpicProgress:
    completed: int = 0
    total: int = 0


@dataclass(slots=True)
class SpawnResult:
    success: bool
    task_id: str | None = None
    worker_id: str | None = None
    session_id: str | None = None
    error: str | None = None


@dataclass(slots=True)
class LaunchResult:
    success: bool
    error: str | None = None
    spawn_results: list[SpawnResult] = field(default_factory=list)


@dataclass(slots=True)
class BacklogChild:
    """A child task as the backlog store reports it."""

    id: str
    title: str
    priority: int
    status: str = BACKLOG_OPEN
    depends_on_ids: list[str] = field(default_factory=list)
    assignee: str | None = None
    issue_type: str = "task"


@dataclass(slots=True)
class EpicChildren:
    epic_id: str
    epic_title: str
    epic_status: str = BACKLOG_OPEN
    children: list[BacklogChild] = field(default_factory=list)

    @classmethod
    def from_payload(cls, epic_id: str, payload: dict[str, Any]) -> EpicChildren:
        """Parse the ``/api/epics/{id}/children`` response body."""
        children: list[BacklogChild] = []
        for item in payload.get("children") or []:
            if not isinstance(item, dict) or "id" not in item:
                continue
            deps = item.get("dependsOn")
            if deps is None:
                deps = item.get("blockedBy") or []
            children.append(BacklogChild(
                id=str(item["id"]),
                title=str(item.get("title", "")),
                priority=int(item.get("priority", 0) or 0),
                status=str(item.get("status", BACKLOG_OPEN)),
                depends_on_ids=[str(d["id"]) if isinstance(d, dict) else str(d) for d in deps],
                assignee=item.get("assignee") or None,
                issue_type=str(item.get("issue_type", "task")),
            ))
        return cls(
            epic_id=str(payload.get("epicId", epic_id)),
            epic_title=str(payload.get("epicTitle", "")),
            epic_status=str(payload.get("epicStatus", BACKLOG_OPEN)),
            children=children,
        )


@dataclass(slots=True)
class PersistedEpic:
    epic_id: str
    settings: ExecutionSettings

    def to_dict(self) -> dict[str, Any]:
        return {"epicId": self.epic_id, "settings": self.settings.to_dict()}

    @classmethod
    def from_dict(cls, raw: Any) -> PersistedEpic | None:
        if not isinstance(raw, dict) or not raw.get("epicId"):
            return None
        settings_raw = raw.get("settings") if isinstance(raw.get("settings"), dict) else {}
        return cls(epic_id=str(raw["epicId"]), settings=ExecutionSettings.from_dict(settings_raw))


@dataclass(slots=True)
class ActiveEpicClaim:
    """Marker read by unaffiliated workers before they self-assign."""

    epic_id: str
    epic_title: str
    task_ids: list[str]
    review_threshold: str = "p0-p1"
    started_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "epicId": self.epic_id,
            "epicTitle": self.epic_title,
            "taskIds": list(self.task_ids),
            "reviewThreshold": self.review_threshold,
            "startedAt": self.started_at,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> ActiveEpicClaim | None:
        if not isinstance(raw, dict) or not raw.get("epicId"):
            return None
        task_ids = raw.get("taskIds")
        if not isinstance(task_ids, list):
            return None
        return cls(
            epic_id=str(raw["epicId"]),
            epic_title=str(raw.get("epicTitle", "")),
            task_ids=[str(t) for t in task_ids],
            review_threshold=str(raw.get("reviewThreshold") or "p0-p1"),
            started_at=str(raw.get("startedAt") or utc_now_iso()),
        )
