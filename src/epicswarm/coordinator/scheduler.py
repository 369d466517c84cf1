"""Concurrency gate, dispatch ordering and review policy."""

from __future__ import annotations

from typing import Iterable

from epicswarm.protocol.models import (
    CHILD_STATUSES,
    EpicChild,
    ExecutionSettings,
)


def effective_limit(settings: ExecutionSettings) -> int:
    if settings.mode == "sequential":
        return 1
    return max(settings.max_concurrent, 1)


def can_spawn_more(settings: ExecutionSettings, running_count: int) -> bool:
    if settings.mode == "sequential":
        return running_count == 0
    return running_count < settings.max_concurrent


def ready_by_priority(children: Iterable[EpicChild]) -> list[EpicChild]:
    # sorted() is stable, so equal priorities keep backlog order
    return sorted((c for c in children if c.status == "ready"), key=lambda c: c.priority)


def requires_review(priority: int, threshold: str) -> bool:
    """Whether a task of *priority* needs human review before acceptance."""
    if threshold == "all":
        return True
    if threshold == "none":
        return False
    if threshold == "p0":
        return priority == 0
    if threshold == "p0-p1":
        return priority <= 1
    if threshold == "p0-p2":
        return priority <= 2
    return True


def status_counts(children: Iterable[EpicChild]) -> dict[str, int]:
    counts = {status: 0 for status in CHILD_STATUSES}
    for child in children:
        counts[child.status] += 1
    return counts
