"""Dry-run an epic against in-memory collaborators.

A scenario is a YAML mapping::

    epic: {id: demo-e1, title: Demo}
    settings: {mode: parallel, max_concurrent: 2}
    children:
      - {id: demo-a, title: Schema, priority: 0}
      - {id: demo-b, title: API, priority: 1, depends_on: [demo-a]}
    spawn_failures:
      demo-c: tmux session limit reached

Workers finish in the order they were dispatched.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from epicswarm.adapters.mock import MockBacklogStore, MockSpawner
from epicswarm.config.schema import SwarmConfig
from epicswarm.coordinator.epic_queue import EpicScheduler
from epicswarm.coordinator.event_bus import DISPATCH_SUCCEEDED, EventBus, SwarmEvent
from epicswarm.errors import ConfigurationError
from epicswarm.protocol.models import (
    BACKLOG_CLOSED,
    BACKLOG_OPEN,
    BacklogChild,
    EpicProgress,
    ExecutionSettings,
    LaunchResult,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SimulationReport:
    launch: LaunchResult
    progress: EpicProgress = field(default_factory=EpicProgress)
    completed_order: list[str] = field(default_factory=list)
    never_started: list[str] = field(default_factory=list)
    events: list[SwarmEvent] = field(default_factory=list)
    complete: bool = False


def load_scenario(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid scenario YAML in {p}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Scenario {p} must be a mapping")
    return raw


def _parse_children(raw: Any) -> list[BacklogChild]:
    if not isinstance(raw, list) or not raw:
        raise ConfigurationError("Scenario needs a non-empty 'children' list")
    children: list[BacklogChild] = []
    for item in raw:
        if not isinstance(item, dict) or "id" not in item:
            raise ConfigurationError(f"Scenario child without an id: {item!r}")
        children.append(BacklogChild(
            id=str(item["id"]),
            title=str(item.get("title", item["id"])),
            priority=int(item.get("priority", 2)),
            status=str(item.get("status", BACKLOG_OPEN)),
            depends_on_ids=[str(d) for d in item.get("depends_on") or []],
        ))
    return children


async def run_scenario(
    scenario: dict[str, Any],
    config: SwarmConfig | None = None,
    *,
    max_steps: int = 1000,
) -> SimulationReport:
    epic = scenario.get("epic") or {}
    epic_id = str(epic.get("id", "sim-epic"))
    children = _parse_children(scenario.get("children"))
    failures = {str(k): str(v) for k, v in (scenario.get("spawn_failures") or {}).items()}

    cfg = config or SwarmConfig()
    cfg = replace(cfg, spawn=replace(cfg.spawn, stagger_ms=0, cascade_delay_ms=0))

    backlog = MockBacklogStore()
    backlog.add_epic(epic_id, str(epic.get("title", epic_id)), children)
    events = EventBus()
    dispatched: deque[str] = deque()

    def _track(event: SwarmEvent) -> None:
        dispatched.append(event.task_id)

    events.subscribe(_track, DISPATCH_SUCCEEDED)
    scheduler = EpicScheduler(backlog, MockSpawner(failures=failures), event_bus=events, config=cfg)

    settings_raw = scenario.get("settings") or {}
    settings = ExecutionSettings.from_dict(settings_raw, base=scheduler.settings)
    launch = await scheduler.launch(epic_id, settings)
    report = SimulationReport(launch=launch)
    if not launch.success:
        report.events = events.history
        return report

    steps = 0
    while dispatched and steps < max_steps:
        task_id = dispatched.popleft()
        backlog.set_child_status(epic_id, task_id, BACKLOG_CLOSED)
        await scheduler.complete_task(task_id)
        report.completed_order.append(task_id)
        steps += 1
    if dispatched:
        logger.warning("Simulation stopped after %d steps with %d workers still running", steps, len(dispatched))

    report.progress = scheduler.progress
    report.complete = scheduler.is_epic_complete()
    report.never_started = [c.id for c in scheduler.state.children if c.status in ("ready", "blocked")]
    report.events = events.history
    return report
