"""Collaborator interfaces the scheduler depends on."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from epicswarm.protocol.models import EpicChildren, SpawnResult


@runtime_checkable
class Spawner(Protocol):
    """Starts one worker for one task.  Single attempt, no retry."""

    async def spawn(self, task_id: str) -> SpawnResult: ...


@runtime_checkable
class BacklogStore(Protocol):
    """Read side of the authoritative task store.

    ``fetch_children`` raises :class:`epicswarm.errors.BacklogError` when
    the epic cannot be read.
    """

    async def fetch_children(self, epic_id: str) -> EpicChildren: ...
