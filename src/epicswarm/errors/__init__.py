"""Epicswarm error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    """Category of error for classification and handling."""

    BACKLOG = "backlog"
    SPAWN = "spawn"
    PERSISTENCE = "persistence"
    CONFIGURATION = "configuration"
    STATE = "state"
    INTERNAL = "internal"


class EpicSwarmError(Exception):
    """Base error for all scheduler exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, category={self.category!r})"


class BacklogError(EpicSwarmError):
    """The backlog store could not answer (network, HTTP status, bad payload)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = True,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, category=ErrorCategory.BACKLOG, retryable=retryable, **kwargs)
        self.status_code = status_code


class EpicNotFoundError(BacklogError):
    """Requested epic does not exist in the backlog."""

    def __init__(self, epic_id: str) -> None:
        super().__init__(f"Epic '{epic_id}' not found", status_code=404, retryable=False)
        self.epic_id = epic_id


class SpawnError(EpicSwarmError):
    """A worker could not be spawned for a task."""

    def __init__(self, message: str, *, task_id: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.SPAWN, **kwargs)
        self.task_id = task_id


class PersistenceError(EpicSwarmError):
    """Snapshot or claim marker could not be read or written."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.PERSISTENCE, **kwargs)


class ConfigurationError(EpicSwarmError):
    """Invalid or missing configuration."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION, retryable=False)


class NoActiveEpicError(EpicSwarmError):
    """An operation needed an active epic but none is running."""

    def __init__(self, message: str = "No active epic") -> None:
        super().__init__(message, category=ErrorCategory.STATE, retryable=False)


__all__ = [
    "BacklogError",
    "ConfigurationError",
    "EpicNotFoundError",
    "EpicSwarmError",
    "ErrorCategory",
    "NoActiveEpicError",
    "PersistenceError",
    "SpawnError",
]
