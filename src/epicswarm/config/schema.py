"""Configuration schema for epicswarm YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class RunConfig:
    state_dir: str = ".epicswarm"
    debug: bool = False
    json_logs: bool = False


@dataclass(slots=True)
class ApiConfig:
    base_url: str = "http://127.0.0.1:3333"
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class SpawnConfig:
    stagger_ms: int = 500  # between starts of the initial batch
    cascade_delay_ms: int = 1000  # between dispatches of a completion cascade
    default_model: str = "opus-4.5"
    max_sessions: int = 12  # upper clamp for max_concurrent
    min_agents: int = 1


@dataclass(slots=True)
class ExecutionConfig:
    mode: str = "parallel"
    review_threshold: str = "p0-p1"
    max_concurrent: int = 4
    auto_spawn: bool = True


@dataclass(slots=True)
class ReconcileConfig:
    interval_seconds: float = 30.0


@dataclass(slots=True)
class ClaimConfig:
    path: str = "/tmp/jat-epic-active.json"
    via: str = "file"  # file | api


@dataclass(slots=True)
class SwarmConfig:
    version: int = 1
    run: RunConfig = field(default_factory=RunConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    spawn: SpawnConfig = field(default_factory=SpawnConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    claims: ClaimConfig = field(default_factory=ClaimConfig)
