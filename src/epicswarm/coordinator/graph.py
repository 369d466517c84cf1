"""Dependency resolution over an epic's children.

Only edges between children of the same epic can block.  A dependency on
a task outside the epic is ignored: the scheduler has no view of it and
must not wait on it forever.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Iterable

from epicswarm.protocol.models import (
    BACKLOG_CLOSED,
    BACKLOG_IN_PROGRESS,
    BacklogChild,
    ChildStatus,
    EpicChild,
)

logger = logging.getLogger(__name__)

_SETTLED: frozenset[str] = frozenset({"completed", "in_progress"})


def initial_status(child: BacklogChild, siblings: list[BacklogChild]) -> ChildStatus:
    """Status of *child* when an epic is first loaded from the backlog."""
    if child.status == BACKLOG_CLOSED:
        return "completed"
    if child.status == BACKLOG_IN_PROGRESS:
        return "in_progress"
    sibling_status = {s.id: s.status for s in siblings}
    for dep_id in child.depends_on_ids:
        dep_status = sibling_status.get(dep_id)
        if dep_status is not None and dep_status != BACKLOG_CLOSED:
            return "blocked"
    return "ready"


def build_children(items: list[BacklogChild]) -> list[EpicChild]:
    return [
        EpicChild(
            id=item.id,
            title=item.title,
            priority=item.priority,
            status=initial_status(item, items),
            assignee=item.assignee,
            depends_on=list(item.depends_on_ids),
        )
        for item in items
    ]


def resolve_statuses(children: list[EpicChild]) -> dict[str, ChildStatus]:
    """Recompute ready/blocked for every unsettled child.

    Returns the ids whose status changed, mapped to their new status.
    Children are updated in place.  Calling this twice in a row is a no-op
    the second time.
    """
    status_by_id = {c.id: c.status for c in children}
    changed: dict[str, ChildStatus] = {}
    for child in children:
        if child.status in _SETTLED:
            continue
        blocked = any(
            dep_id in status_by_id and status_by_id[dep_id] != "completed"
            for dep_id in child.depends_on
        )
        new_status: ChildStatus = "blocked" if blocked else "ready"
        if new_status != child.status:
            child.status = new_status
            changed[child.id] = new_status
    return changed


def blocked_ids(children: Iterable[EpicChild]) -> set[str]:
    return {c.id for c in children if c.status == "blocked"}


def newly_ready(previously_blocked: set[str], children: list[EpicChild]) -> list[EpicChild]:
    """Children that were blocked before a mutation and are ready now, most urgent first."""
    unblocked = [c for c in children if c.id in previously_blocked and c.status == "ready"]
    unblocked.sort(key=lambda c: c.priority)
    return unblocked


def find_cycle_members(children: list[EpicChild]) -> list[str]:
    """Return ids that can never become ready because of a dependency cycle.

    Uses Kahn's algorithm over in-epic edges.  Completed children count as
    resolved roots, so a cycle that was broken externally is not reported.
    Members include tasks downstream of a cycle, which are just as stuck.
    """
    ids = {c.id for c in children}
    in_degree: dict[str, int] = {c.id: 0 for c in children}
    dependents: dict[str, list[str]] = {c.id: [] for c in children}
    for child in children:
        if child.status == "completed":
            continue
        for dep_id in set(child.depends_on):
            if dep_id in ids and dep_id != child.id:
                in_degree[child.id] += 1
                dependents[dep_id].append(child.id)
            elif dep_id == child.id:
                in_degree[child.id] += 1

    queue: deque[str] = deque(tid for tid, deg in in_degree.items() if deg == 0)
    processed: set[str] = set()
    while queue:
        tid = queue.popleft()
        processed.add(tid)
        for dependent in dependents[tid]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    stuck = [c.id for c in children if c.id not in processed]
    if stuck:
        logger.debug("Dependency cycle leaves %d task(s) unschedulable: %s", len(stuck), stuck)
    return stuck
