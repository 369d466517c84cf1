"""Saved execution settings, global and per project.

The project is the epic id prefix before the first dash (``web-a1b`` ->
``web``).  Lookup order on load: project, then global, then defaults.
"""

from __future__ import annotations

import logging
from typing import Any

from epicswarm.config.schema import SpawnConfig
from epicswarm.config.loader import clamp_max_concurrent
from epicswarm.persistence.snapshot import SnapshotStore
from epicswarm.protocol.models import (
    EXECUTION_MODES,
    REVIEW_THRESHOLDS,
    ExecutionSettings,
)

logger = logging.getLogger(__name__)

GLOBAL_KEY = "epic-swarm-settings"
PROJECT_KEY_PREFIX = "epic-swarm-settings-project-"


def project_from_epic_id(epic_id: str | None) -> str | None:
    if not epic_id:
        return None
    dash = epic_id.find("-")
    if dash <= 0:
        return None
    return epic_id[:dash]


class SwarmPreferences:
    def __init__(
        self,
        store: SnapshotStore,
        defaults: ExecutionSettings | None = None,
        spawn: SpawnConfig | None = None,
    ) -> None:
        self._store = store
        self._defaults = defaults or ExecutionSettings()
        self._spawn = spawn or SpawnConfig()

    @property
    def defaults(self) -> ExecutionSettings:
        return self._defaults

    def save(self, settings: ExecutionSettings, epic_id: str | None = None) -> ExecutionSettings:
        """Save as global settings and, when the epic names a project, as that project's."""
        clamped = settings.merged(
            max_concurrent=clamp_max_concurrent(settings.max_concurrent, self._spawn),
        )
        payload = clamped.to_dict()
        self._store.put(GLOBAL_KEY, payload)
        project = project_from_epic_id(epic_id)
        if project:
            self._store.put(PROJECT_KEY_PREFIX + project, payload)
        return clamped

    def load(self, epic_id: str | None = None) -> ExecutionSettings:
        raw: Any = None
        project = project_from_epic_id(epic_id)
        if project:
            raw = self._store.get(PROJECT_KEY_PREFIX + project)
        if not isinstance(raw, dict):
            raw = self._store.get(GLOBAL_KEY)
        if not isinstance(raw, dict):
            return self._defaults.merged()
        return self._sanitize(raw)

    def reset(self, epic_id: str | None = None) -> ExecutionSettings:
        """Clear the project's settings when *epic_id* names one, otherwise the global settings."""
        project = project_from_epic_id(epic_id)
        if project:
            self._store.delete(PROJECT_KEY_PREFIX + project)
        else:
            self._store.delete(GLOBAL_KEY)
        return self._defaults.merged()

    def has_custom(self, epic_id: str | None = None) -> bool:
        return self.load(epic_id) != self._defaults

    def projects_with_custom(self) -> list[str]:
        return sorted(
            key[len(PROJECT_KEY_PREFIX):]
            for key in self._store.keys()
            if key.startswith(PROJECT_KEY_PREFIX) and len(key) > len(PROJECT_KEY_PREFIX)
        )

    def _sanitize(self, raw: dict[str, Any]) -> ExecutionSettings:
        settings = ExecutionSettings.from_dict(raw, base=self._defaults)
        if settings.mode not in EXECUTION_MODES:
            logger.warning("Ignoring saved execution mode %r", settings.mode)
            settings = settings.merged(mode=self._defaults.mode)
        if settings.review_threshold not in REVIEW_THRESHOLDS:
            logger.warning("Ignoring saved review threshold %r", settings.review_threshold)
            settings = settings.merged(review_threshold=self._defaults.review_threshold)
        if not isinstance(settings.auto_spawn, bool):
            settings = settings.merged(auto_spawn=self._defaults.auto_spawn)
        max_concurrent = settings.max_concurrent
        if isinstance(max_concurrent, bool) or not isinstance(max_concurrent, int):
            max_concurrent = self._defaults.max_concurrent
        return settings.merged(max_concurrent=clamp_max_concurrent(max_concurrent, self._spawn))
