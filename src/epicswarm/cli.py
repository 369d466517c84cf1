"""CLI entrypoint for epicswarm."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click

from epicswarm.adapters.http import HttpBacklogStore, HttpClaimPublisher, HttpSpawner
from epicswarm.config.loader import default_settings, load_swarm_yaml, validate_settings
from epicswarm.config.schema import SwarmConfig
from epicswarm.coordinator.epic_queue import EpicScheduler
from epicswarm.coordinator.event_bus import EventBus, SwarmEvent
from epicswarm.errors import EpicSwarmError
from epicswarm.logging_setup import setup_logging
from epicswarm.persistence.claims import FileClaimPublisher, is_task_claimed, read_active_claim
from epicswarm.persistence.preferences import SwarmPreferences
from epicswarm.persistence.snapshot import JsonFileSnapshotStore, load_active_epic
from epicswarm.protocol.models import EXECUTION_MODES, REVIEW_THRESHOLDS, ExecutionSettings
from epicswarm.simulate import load_scenario, run_scenario

logger = logging.getLogger(__name__)

SNAPSHOT_FILE = "snapshot.json"
PREFERENCES_FILE = "preferences.json"
EVENTS_FILE = "events.jsonl"

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to epicswarm YAML config",
)


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
def main(debug: bool, json_logs: bool) -> None:
    """Epic swarm scheduler: dispatch an epic's children to a bounded worker pool."""
    setup_logging(debug=debug, json_output=json_logs)


def _load_config(config_path: Path | None) -> SwarmConfig:
    try:
        return load_swarm_yaml(config_path)
    except EpicSwarmError as exc:
        raise click.ClickException(str(exc)) from exc


def _state_dir(cfg: SwarmConfig) -> Path:
    return Path(cfg.run.state_dir)


def _preferences(cfg: SwarmConfig) -> SwarmPreferences:
    store = JsonFileSnapshotStore(_state_dir(cfg) / PREFERENCES_FILE)
    return SwarmPreferences(store, defaults=default_settings(cfg), spawn=cfg.spawn)


def _build_scheduler(cfg: SwarmConfig) -> tuple[EpicScheduler, list[Any]]:
    """Wire HTTP collaborators into a scheduler.  Returns it with the clients to close."""
    backlog = HttpBacklogStore(cfg.api.base_url, cfg.api.timeout_seconds)
    spawner = HttpSpawner(cfg.api.base_url, cfg.api.timeout_seconds, model=cfg.spawn.default_model)
    clients: list[Any] = [backlog, spawner]
    if cfg.claims.via == "api":
        claims: Any = HttpClaimPublisher(cfg.api.base_url, cfg.api.timeout_seconds)
        clients.append(claims)
    else:
        claims = FileClaimPublisher(cfg.claims.path)
    events = EventBus(persist_path=_state_dir(cfg) / EVENTS_FILE)
    events.subscribe(_echo_event)
    scheduler = EpicScheduler(
        backlog,
        spawner,
        snapshots=JsonFileSnapshotStore(_state_dir(cfg) / SNAPSHOT_FILE),
        claims=claims,
        event_bus=events,
        config=cfg,
    )
    return scheduler, clients


async def _close_all(clients: list[Any]) -> None:
    for client in clients:
        await client.close()


def _format_event(event: SwarmEvent) -> str:
    parts = [event.event_type]
    if event.task_id:
        parts.append(f"task={event.task_id}")
    if event.worker_id:
        parts.append(f"worker={event.worker_id}")
    if event.message:
        parts.append(f"error={event.message}")
    if event.data:
        parts.append(json.dumps(event.data, sort_keys=True, default=str))
    return "  ".join(parts)


def _echo_event(event: SwarmEvent) -> None:
    click.echo(_format_event(event))


async def _watch(scheduler: EpicScheduler, cfg: SwarmConfig) -> None:
    interval = cfg.reconcile.interval_seconds
    scheduler.start_reconciler(interval, cascade=True)
    try:
        while scheduler.is_active and not scheduler.is_epic_complete():
            await asyncio.sleep(min(interval, 1.0))
    finally:
        await scheduler.stop_reconciler()
    if scheduler.is_epic_complete():
        progress = scheduler.progress
        click.echo(f"Epic {scheduler.epic_id} complete ({progress.completed}/{progress.total})")
    else:
        click.echo("Epic is no longer active")


@main.command("launch")
@click.argument("epic_id")
@_config_option
@click.option("--mode", type=click.Choice(EXECUTION_MODES), default=None)
@click.option("--max-concurrent", type=int, default=None, help="Worker ceiling in parallel mode")
@click.option("--review-threshold", type=click.Choice(REVIEW_THRESHOLDS), default=None)
@click.option("--auto-spawn/--no-auto-spawn", default=None, help="Dispatch ready children immediately")
@click.option("--watch", is_flag=True, help="Keep reconciling and dispatching until the epic finishes")
def launch_cmd(
    epic_id: str,
    config_path: Path | None,
    mode: str | None,
    max_concurrent: int | None,
    review_threshold: str | None,
    auto_spawn: bool | None,
    watch: bool,
) -> None:
    """Launch EPIC_ID: fetch its children and dispatch ready ones."""
    cfg = _load_config(config_path)
    settings = _preferences(cfg).load(epic_id).merged(
        mode=mode,
        max_concurrent=max_concurrent,
        review_threshold=review_threshold,
        auto_spawn=auto_spawn,
    )
    try:
        settings = validate_settings(settings, cfg)
    except EpicSwarmError as exc:
        raise click.ClickException(str(exc)) from exc

    async def _run() -> int:
        scheduler, clients = _build_scheduler(cfg)
        try:
            result = await scheduler.launch(epic_id, settings)
            if not result.success:
                click.echo(f"Launch failed: {result.error}", err=True)
                return 1
            spawned = sum(1 for r in result.spawn_results if r.success)
            click.echo(f"Launched {epic_id}: {spawned} worker(s) started")
            for r in result.spawn_results:
                if not r.success:
                    click.echo(f"  {r.task_id or '-'}: {r.error}", err=True)
            if watch:
                await _watch(scheduler, cfg)
            return 0
        finally:
            await _close_all(clients)

    raise SystemExit(asyncio.run(_run()))


@main.command("restore")
@_config_option
@click.option("--watch", is_flag=True, help="Keep reconciling until the epic finishes")
def restore_cmd(config_path: Path | None, watch: bool) -> None:
    """Restore the persisted epic without spawning workers."""
    cfg = _load_config(config_path)

    async def _run() -> int:
        scheduler, clients = _build_scheduler(cfg)
        try:
            if not await scheduler.restore():
                click.echo("No epic restored")
                return 1
            counts = scheduler.status_counts()
            click.echo(f"Restored {scheduler.epic_id}: {json.dumps(counts, sort_keys=True)}")
            if watch:
                await _watch(scheduler, cfg)
            return 0
        finally:
            await _close_all(clients)

    raise SystemExit(asyncio.run(_run()))


@main.command("stop")
@_config_option
def stop_cmd(config_path: Path | None) -> None:
    """Clear the persisted epic and retract the claim marker."""
    cfg = _load_config(config_path)

    async def _run() -> None:
        scheduler, clients = _build_scheduler(cfg)
        try:
            await scheduler.stop()
        finally:
            await _close_all(clients)

    asyncio.run(_run())
    click.echo("Stopped")


@main.command("status")
@_config_option
def status_cmd(config_path: Path | None) -> None:
    """Show the persisted epic and the active claim marker."""
    cfg = _load_config(config_path)
    snapshot = load_active_epic(JsonFileSnapshotStore(_state_dir(cfg) / SNAPSHOT_FILE))
    claim = read_active_claim(cfg.claims.path)
    click.echo(json.dumps({
        "snapshot": snapshot.to_dict() if snapshot else None,
        "claim": claim.to_dict() if claim else None,
    }, indent=2))


@main.command("check-claim")
@click.argument("task_id")
@_config_option
def check_claim_cmd(task_id: str, config_path: Path | None) -> None:
    """Exit 1 when TASK_ID belongs to a running epic."""
    cfg = _load_config(config_path)
    if is_task_claimed(task_id, cfg.claims.path):
        claim = read_active_claim(cfg.claims.path)
        click.echo(f"{task_id} is claimed by epic {claim.epic_id if claim else '?'}")
        raise SystemExit(1)
    click.echo(f"{task_id} is free")


@main.group("settings")
def settings_group() -> None:
    """Saved execution settings, global or per project."""


@settings_group.command("show")
@click.option("--epic", "epic_id", default=None, help="Resolve settings for this epic's project")
@_config_option
def settings_show(epic_id: str | None, config_path: Path | None) -> None:
    cfg = _load_config(config_path)
    prefs = _preferences(cfg)
    click.echo(json.dumps({
        "settings": prefs.load(epic_id).to_dict(),
        "custom": prefs.has_custom(epic_id),
        "projects": prefs.projects_with_custom(),
    }, indent=2))


@settings_group.command("save")
@click.option("--epic", "epic_id", default=None, help="Also save for this epic's project")
@click.option("--mode", type=click.Choice(EXECUTION_MODES), default=None)
@click.option("--max-concurrent", type=int, default=None)
@click.option("--review-threshold", type=click.Choice(REVIEW_THRESHOLDS), default=None)
@click.option("--auto-spawn/--no-auto-spawn", default=None)
@_config_option
def settings_save(
    epic_id: str | None,
    mode: str | None,
    max_concurrent: int | None,
    review_threshold: str | None,
    auto_spawn: bool | None,
    config_path: Path | None,
) -> None:
    cfg = _load_config(config_path)
    prefs = _preferences(cfg)
    current: ExecutionSettings = prefs.load(epic_id)
    saved = prefs.save(
        current.merged(
            mode=mode,
            max_concurrent=max_concurrent,
            review_threshold=review_threshold,
            auto_spawn=auto_spawn,
        ),
        epic_id,
    )
    click.echo(json.dumps(saved.to_dict(), indent=2))


@settings_group.command("reset")
@click.option("--epic", "epic_id", default=None, help="Reset only this epic's project")
@_config_option
def settings_reset(epic_id: str | None, config_path: Path | None) -> None:
    cfg = _load_config(config_path)
    defaults = _preferences(cfg).reset(epic_id)
    click.echo(json.dumps(defaults.to_dict(), indent=2))


@main.command("simulate")
@click.argument("scenario_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_config_option
def simulate_cmd(scenario_file: Path, config_path: Path | None) -> None:
    """Run SCENARIO_FILE against in-memory collaborators."""
    cfg = _load_config(config_path)
    try:
        scenario = load_scenario(scenario_file)
        report = asyncio.run(run_scenario(scenario, cfg))
    except EpicSwarmError as exc:
        raise click.ClickException(str(exc)) from exc

    for event in report.events:
        click.echo(_format_event(event))
    if not report.launch.success:
        click.echo(f"Launch failed: {report.launch.error}", err=True)
        raise SystemExit(1)
    click.echo(f"Completed order: {', '.join(report.completed_order) or '-'}")
    click.echo(f"Progress: {report.progress.completed}/{report.progress.total}")
    if report.never_started:
        click.echo(f"Never started: {', '.join(report.never_started)}")
    raise SystemExit(0 if report.complete else 2)
