"""Key-value snapshot stores for surviving restarts.

Only settings are persisted, never the child graph: the backlog is the
source of truth and is re-fetched on restore.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from epicswarm.errors import PersistenceError
from epicswarm.protocol.io import read_json, write_json_atomic
from epicswarm.protocol.locks import locked_file
from epicswarm.protocol.models import PersistedEpic

logger = logging.getLogger(__name__)

ACTIVE_EPIC_KEY = "epic-queue-active"


@runtime_checkable
class SnapshotStore(Protocol):
    def get(self, key: str) -> Any | None: ...

    def put(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class MemorySnapshotStore:
    """Process-local store, used in tests and simulations."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    def get(self, key: str) -> Any | None:
        return self._data.get(key)

    def put(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class JsonFileSnapshotStore:
    """All keys in one JSON object on disk, guarded by an advisory lock."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str) -> Any | None:
        return self._load().get(key)

    def put(self, key: str, value: Any) -> None:
        try:
            with locked_file(self._path):
                data = self._load()
                data[key] = value
                write_json_atomic(self._path, data)
        except OSError as exc:
            raise PersistenceError(f"Failed to write snapshot {self._path}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            with locked_file(self._path):
                data = self._load()
                if key in data:
                    del data[key]
                    write_json_atomic(self._path, data)
        except OSError as exc:
            raise PersistenceError(f"Failed to update snapshot {self._path}: {exc}") from exc

    def keys(self) -> list[str]:
        return list(self._load())

    def _load(self) -> dict[str, Any]:
        data = read_json(self._path, default={})
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed snapshot file %s", self._path)
            return {}
        return data


def save_active_epic(store: SnapshotStore, snapshot: PersistedEpic) -> None:
    store.put(ACTIVE_EPIC_KEY, snapshot.to_dict())
    logger.info("Persisted active epic %s", snapshot.epic_id)


def load_active_epic(store: SnapshotStore) -> PersistedEpic | None:
    raw = store.get(ACTIVE_EPIC_KEY)
    if raw is None:
        return None
    snapshot = PersistedEpic.from_dict(raw)
    if snapshot is None:
        logger.warning("Discarding unreadable active-epic snapshot")
        store.delete(ACTIVE_EPIC_KEY)
    return snapshot


def clear_active_epic(store: SnapshotStore) -> None:
    store.delete(ACTIVE_EPIC_KEY)
    logger.info("Cleared persisted epic state")
