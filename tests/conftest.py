"""Global test fixtures for epicswarm."""

from __future__ import annotations

from pathlib import Path

import pytest

from epicswarm.persistence.snapshot import MemorySnapshotStore


@pytest.fixture
def memory_store() -> MemorySnapshotStore:
    return MemorySnapshotStore()


@pytest.fixture
def claim_path(tmp_path: Path) -> Path:
    """Claim marker location private to the test."""
    return tmp_path / "epic-active.json"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in ("EPICSWARM_API_URL", "EPICSWARM_STATE_DIR", "EPICSWARM_CLAIM_PATH"):
        monkeypatch.delenv(var, raising=False)
