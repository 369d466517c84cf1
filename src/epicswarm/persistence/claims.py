"""Claim marker telling unaffiliated workers which tasks belong to a running epic.

Workers that pick their own next task from the open backlog call
:func:`is_task_claimed` first and skip anything listed here.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from epicswarm.errors import PersistenceError
from epicswarm.protocol.io import read_json, remove_file, write_json_atomic
from epicswarm.protocol.models import ActiveEpicClaim

logger = logging.getLogger(__name__)


@runtime_checkable
class ClaimPublisher(Protocol):
    async def publish(self, claim: ActiveEpicClaim) -> None: ...

    async def retract(self) -> None: ...


class FileClaimPublisher:
    """Writes the claim as JSON to a path every worker on the host can read."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    async def publish(self, claim: ActiveEpicClaim) -> None:
        try:
            write_json_atomic(self._path, claim.to_dict())
        except OSError as exc:
            raise PersistenceError(f"Failed to write claim marker {self._path}: {exc}") from exc
        logger.info("Wrote claim marker for epic %s with %d tasks", claim.epic_id, len(claim.task_ids))

    async def retract(self) -> None:
        try:
            removed = remove_file(self._path)
        except OSError as exc:
            raise PersistenceError(f"Failed to remove claim marker {self._path}: {exc}") from exc
        if removed:
            logger.info("Cleared claim marker %s", self._path)


class NullClaimPublisher:
    """Publishes nothing.  For single-process setups with no outside workers."""

    async def publish(self, claim: ActiveEpicClaim) -> None:
        return None

    async def retract(self) -> None:
        return None


def read_active_claim(path: str | Path) -> ActiveEpicClaim | None:
    return ActiveEpicClaim.from_dict(read_json(Path(path), default=None))


def is_task_claimed(task_id: str, path: str | Path) -> bool:
    claim = read_active_claim(path)
    return claim is not None and task_id in claim.task_ids
