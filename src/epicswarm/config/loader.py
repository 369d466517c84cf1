"""YAML config loader for epicswarm."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from epicswarm.config.schema import (
    ApiConfig,
    ClaimConfig,
    ExecutionConfig,
    ReconcileConfig,
    RunConfig,
    SpawnConfig,
    SwarmConfig,
)
from epicswarm.errors import ConfigurationError
from epicswarm.protocol.models import (
    EXECUTION_MODES,
    REVIEW_THRESHOLDS,
    ExecutionSettings,
)

ENV_API_URL = "EPICSWARM_API_URL"
ENV_STATE_DIR = "EPICSWARM_STATE_DIR"
ENV_CLAIM_PATH = "EPICSWARM_CLAIM_PATH"

CLAIM_TRANSPORTS = ("file", "api")


def load_swarm_yaml(path: str | Path | None = None, *, use_env: bool = True) -> SwarmConfig:
    raw: Any = {}
    if path is not None:
        p = Path(path)
        if p.exists():
            try:
                raw = yaml.safe_load(p.read_text(encoding="utf-8"))
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Invalid YAML in {p}: {exc}") from exc
    if not isinstance(raw, dict):
        raw = {}

    cfg = SwarmConfig(
        version=int(raw.get("version", 1)),
        run=RunConfig(**_pick(_section(raw, "run"), RunConfig)),
        api=ApiConfig(**_pick(_section(raw, "api"), ApiConfig)),
        spawn=SpawnConfig(**_pick(_section(raw, "spawn"), SpawnConfig)),
        execution=ExecutionConfig(**_pick(_section(raw, "execution"), ExecutionConfig)),
        reconcile=ReconcileConfig(**_pick(_section(raw, "reconcile"), ReconcileConfig)),
        claims=ClaimConfig(**_pick(_section(raw, "claims"), ClaimConfig)),
    )
    if use_env:
        _apply_env(cfg)
    if cfg.claims.via not in CLAIM_TRANSPORTS:
        raise ConfigurationError(f"claims.via must be one of {CLAIM_TRANSPORTS}, got {cfg.claims.via!r}")
    return cfg


def default_settings(cfg: SwarmConfig) -> ExecutionSettings:
    """Execution defaults from config, validated and clamped."""
    return validate_settings(
        ExecutionSettings(
            mode=cfg.execution.mode,  # type: ignore[arg-type]
            review_threshold=cfg.execution.review_threshold,  # type: ignore[arg-type]
            max_concurrent=cfg.execution.max_concurrent,
            auto_spawn=cfg.execution.auto_spawn,
        ),
        cfg,
    )


def validate_settings(settings: ExecutionSettings, cfg: SwarmConfig) -> ExecutionSettings:
    if settings.mode not in EXECUTION_MODES:
        raise ConfigurationError(f"Unknown execution mode: {settings.mode!r}")
    if settings.review_threshold not in REVIEW_THRESHOLDS:
        raise ConfigurationError(f"Unknown review threshold: {settings.review_threshold!r}")
    try:
        max_concurrent = int(settings.max_concurrent)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"max_concurrent must be an integer, got {settings.max_concurrent!r}") from exc
    return settings.merged(max_concurrent=clamp_max_concurrent(max_concurrent, cfg.spawn))


def clamp_max_concurrent(value: int, spawn: SpawnConfig) -> int:
    floor = max(spawn.min_agents, 1)
    return max(floor, min(value, max(spawn.max_sessions, floor)))


def _apply_env(cfg: SwarmConfig) -> None:
    load_dotenv()
    if os.environ.get(ENV_API_URL):
        cfg.api.base_url = os.environ[ENV_API_URL]
    if os.environ.get(ENV_STATE_DIR):
        cfg.run.state_dir = os.environ[ENV_STATE_DIR]
    if os.environ.get(ENV_CLAIM_PATH):
        cfg.claims.path = os.environ[ENV_CLAIM_PATH]


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key, {})
    return value if isinstance(value, dict) else {}


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}
