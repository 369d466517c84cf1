"""Tests for EpicScheduler launch, dispatch and completion."""

from __future__ import annotations

import asyncio
import logging

import pytest

from epicswarm.adapters.mock import MockSpawner
from epicswarm.config.schema import SwarmConfig
from epicswarm.coordinator.event_bus import EPIC_LAUNCHED, LAUNCH_FAILED, TASK_COMPLETED
from epicswarm.errors import BacklogError, ConfigurationError, PersistenceError
from epicswarm.persistence.snapshot import ACTIVE_EPIC_KEY, MemorySnapshotStore
from epicswarm.protocol.models import ActiveEpicClaim, ExecutionSettings
from tests.helpers import child, make_scheduler


class _RecordingClaims:
    def __init__(self, fail: bool = False) -> None:
        self.published: list[ActiveEpicClaim] = []
        self.retracted = 0
        self._fail = fail

    async def publish(self, claim: ActiveEpicClaim) -> None:
        if self._fail:
            raise PersistenceError("claim dir not writable")
        self.published.append(claim)

    async def retract(self) -> None:
        self.retracted += 1


def _scenario_a() -> list:
    return [child("A", 0), child("B", 1, deps=["A"]), child("C", 0)]


def _assert_invariants(scheduler) -> None:  # type: ignore[no-untyped-def]
    state = scheduler.state
    assert state.progress.completed <= state.progress.total
    limit = 1 if state.settings.mode == "sequential" else state.settings.max_concurrent
    assert len(state.running_agents) <= limit
    in_progress = [c.id for c in state.children if c.status == "in_progress"]
    assert len(in_progress) == len(set(in_progress))
    by_id = {c.id: c for c in state.children}
    for c in state.children:
        if c.status in ("ready", "in_progress"):
            assert all(by_id[d].status == "completed" for d in c.depends_on if d in by_id)


class TestLaunch:
    @pytest.mark.asyncio
    async def test_scenario_a_parallel_cascade(self) -> None:
        scheduler, _, spawner = make_scheduler(_scenario_a())
        result = await scheduler.launch("proj-e1", ExecutionSettings(max_concurrent=2))

        assert result.success
        assert sorted(spawner.call_history) == ["A", "C"]
        assert scheduler.state.child("B").status == "blocked"  # type: ignore[union-attr]
        assert len(scheduler.running_agents) == 2
        _assert_invariants(scheduler)

        cascade = await scheduler.complete_task("A")
        assert [r.task_id for r in cascade] == ["B"]
        assert scheduler.state.child("B").status == "in_progress"  # type: ignore[union-attr]
        assert len(scheduler.running_agents) == 2
        _assert_invariants(scheduler)

        await scheduler.complete_task("C")
        await scheduler.complete_task("B")
        assert (scheduler.progress.completed, scheduler.progress.total) == (3, 3)
        assert scheduler.running_agents == []
        assert scheduler.is_epic_complete()

    @pytest.mark.asyncio
    async def test_scenario_b_sequential(self) -> None:
        scheduler, _, spawner = make_scheduler([child("D", 0), child("E", 1)])
        await scheduler.launch("proj-e1", ExecutionSettings(mode="sequential", max_concurrent=4))

        assert spawner.call_history == ["D"]
        assert scheduler.state.child("E").status == "ready"  # type: ignore[union-attr]
        assert not scheduler.can_spawn_more()

        results = await scheduler.complete_task("D")
        assert [r.task_id for r in results] == ["E"]
        assert spawner.call_history == ["D", "E"]
        assert scheduler.state.child("E").status == "in_progress"  # type: ignore[union-attr]
        assert not scheduler.can_spawn_more()
        _assert_invariants(scheduler)

    @pytest.mark.asyncio
    async def test_spawn_next_agent_respects_gate(self) -> None:
        scheduler, _, spawner = make_scheduler([child("D", 0), child("E", 1)])
        await scheduler.launch("proj-e1", ExecutionSettings(mode="sequential", auto_spawn=False))
        first = await scheduler.spawn_next_agent()
        assert first is not None and first.task_id == "D"
        assert await scheduler.spawn_next_agent() is None
        assert spawner.call_history == ["D"]

    @pytest.mark.asyncio
    async def test_scenario_c_cycle_stays_blocked(self, caplog: pytest.LogCaptureFixture) -> None:
        scheduler, _, spawner = make_scheduler([child("F", 0, deps=["G"]), child("G", 0, deps=["F"])])
        with caplog.at_level(logging.WARNING, logger="epicswarm.coordinator.epic_queue"):
            result = await scheduler.launch("proj-e1")
        assert result.success
        assert "dependency cycle" in caplog.text
        assert spawner.call_count == 0
        assert [c.status for c in scheduler.blocked_tasks()] == ["blocked", "blocked"]
        assert not scheduler.is_epic_complete()

    @pytest.mark.asyncio
    async def test_unfinished_dependency_blocks_forever(self) -> None:
        scheduler, _, spawner = make_scheduler([child("F", 1, deps=["G"]), child("G", 0)])
        await scheduler.launch("proj-e1")
        assert spawner.call_history == ["G"]
        assert scheduler.state.child("F").status == "blocked"  # type: ignore[union-attr]
        assert not scheduler.is_epic_complete()

    @pytest.mark.asyncio
    async def test_no_auto_spawn_issues_zero_spawns(self) -> None:
        scheduler, _, spawner = make_scheduler(_scenario_a())
        result = await scheduler.launch("proj-e1", ExecutionSettings(auto_spawn=False))
        assert result.success
        assert result.spawn_results == []
        assert spawner.call_count == 0
        await scheduler.complete_task("A")
        assert spawner.call_count == 0

    @pytest.mark.asyncio
    async def test_priority_order_respected(self) -> None:
        children = [child("low", 3), child("high", 0), child("mid", 1)]
        scheduler, _, spawner = make_scheduler(children)
        await scheduler.launch("proj-e1", ExecutionSettings(max_concurrent=2))
        assert sorted(spawner.call_history) == ["high", "mid"]
        assert scheduler.state.child("low").status == "ready"  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_fetch_failure_commits_nothing(self) -> None:
        snapshots = MemorySnapshotStore()
        scheduler, backlog, _ = make_scheduler(_scenario_a(), snapshots=snapshots)
        backlog.fail_with = BacklogError("connection refused")
        result = await scheduler.launch("proj-e1")
        assert not result.success
        assert "connection refused" in (result.error or "")
        assert not scheduler.is_active
        assert scheduler.last_spawn_error == result.error
        assert snapshots.get(ACTIVE_EPIC_KEY) is None
        assert scheduler.events.of_type(LAUNCH_FAILED)

    @pytest.mark.asyncio
    async def test_fetch_failure_keeps_previous_epic(self) -> None:
        scheduler, backlog, _ = make_scheduler(_scenario_a())
        await scheduler.launch("proj-e1", ExecutionSettings(auto_spawn=False))
        result = await scheduler.launch("proj-missing")
        assert not result.success
        assert scheduler.epic_id == "proj-e1"
        assert scheduler.is_active

    @pytest.mark.asyncio
    async def test_persists_snapshot_and_claim(self) -> None:
        snapshots = MemorySnapshotStore()
        claims = _RecordingClaims()
        scheduler, _, _ = make_scheduler(_scenario_a(), snapshots=snapshots, claims=claims)
        await scheduler.launch("proj-e1", ExecutionSettings(review_threshold="p0", auto_spawn=False))
        assert snapshots.get(ACTIVE_EPIC_KEY)["epicId"] == "proj-e1"
        assert claims.published[0].task_ids == ["A", "B", "C"]
        assert claims.published[0].review_threshold == "p0"
        assert scheduler.events.of_type(EPIC_LAUNCHED)

    @pytest.mark.asyncio
    async def test_claim_failure_is_not_fatal(self) -> None:
        scheduler, _, spawner = make_scheduler(_scenario_a(), claims=_RecordingClaims(fail=True))
        result = await scheduler.launch("proj-e1")
        assert result.success
        assert spawner.call_count == 2

    @pytest.mark.asyncio
    async def test_invalid_settings_rejected(self) -> None:
        scheduler, _, _ = make_scheduler(_scenario_a())
        with pytest.raises(ConfigurationError):
            await scheduler.launch("proj-e1", ExecutionSettings(mode="swarm"))  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_max_concurrent_clamped(self) -> None:
        cfg = SwarmConfig()
        cfg.spawn.max_sessions = 3
        children = [child(f"t{i}", i) for i in range(6)]
        scheduler, _, spawner = make_scheduler(children, config=cfg)
        await scheduler.launch("proj-e1", ExecutionSettings(max_concurrent=50))
        assert scheduler.settings.max_concurrent == 3
        assert spawner.call_count == 3


class TestCompleteTask:
    @pytest.mark.asyncio
    async def test_duplicate_completion_is_noop(self) -> None:
        scheduler, _, _ = make_scheduler(_scenario_a())
        await scheduler.launch("proj-e1", ExecutionSettings(max_concurrent=2))
        await scheduler.complete_task("A")
        running = scheduler.running_agents
        progress = scheduler.progress.completed
        assert await scheduler.complete_task("A") == []
        assert scheduler.running_agents == running
        assert scheduler.progress.completed == progress
        assert len(scheduler.events.of_type(TASK_COMPLETED)) == 1

    @pytest.mark.asyncio
    async def test_releases_exactly_one_worker(self) -> None:
        scheduler, _, _ = make_scheduler([child("a"), child("b"), child("c")])
        await scheduler.launch("proj-e1", ExecutionSettings(max_concurrent=3))
        assert len(scheduler.running_agents) == 3
        await scheduler.complete_task("b")
        assert len(scheduler.running_agents) == 2
        assert scheduler.status_counts()["completed"] == 1

    @pytest.mark.asyncio
    async def test_unknown_task_and_inactive_epic(self) -> None:
        scheduler, _, _ = make_scheduler(_scenario_a())
        assert await scheduler.complete_task("A") == []
        await scheduler.launch("proj-e1", ExecutionSettings(auto_spawn=False))
        assert await scheduler.complete_task("nope") == []
        assert scheduler.progress.completed == 0

    @pytest.mark.asyncio
    async def test_concurrent_completions_serialize(self) -> None:
        children = [child("a", 0), child("b", 0), child("x", 1, deps=["a"]), child("y", 1, deps=["b"])]
        scheduler, _, spawner = make_scheduler(children)
        await scheduler.launch("proj-e1", ExecutionSettings(max_concurrent=2))
        await asyncio.gather(scheduler.complete_task("a"), scheduler.complete_task("b"))
        assert sorted(spawner.call_history) == ["a", "b", "x", "y"]
        assert len(scheduler.running_agents) == 2
        _assert_invariants(scheduler)

    @pytest.mark.asyncio
    async def test_cascade_failure_leaves_task_ready(self) -> None:
        spawner = MockSpawner(failures={"B": "no free tmux slot"})
        scheduler, _, _ = make_scheduler(_scenario_a(), spawner=spawner)
        await scheduler.launch("proj-e1", ExecutionSettings(max_concurrent=2))
        results = await scheduler.complete_task("A")
        assert [r.success for r in results] == [False]
        assert scheduler.state.child("B").status == "ready"  # type: ignore[union-attr]
        assert scheduler.last_spawn_error == "no free tmux slot"
        scheduler.clear_spawn_error()
        assert scheduler.last_spawn_error is None


class TestQueries:
    @pytest.mark.asyncio
    async def test_session_and_review_lookup(self) -> None:
        scheduler, _, _ = make_scheduler(_scenario_a())
        await scheduler.launch("proj-e1", ExecutionSettings(max_concurrent=1, review_threshold="p0"))
        assert scheduler.session_for_task("A") == "jat-worker-1"
        assert scheduler.session_for_task("B") is None
        assert scheduler.requires_review(0)
        assert not scheduler.requires_review(1)
        assert scheduler.next_ready_task().id == "C"  # type: ignore[union-attr]
        assert [c.id for c in scheduler.in_progress_tasks()] == ["A"]

    @pytest.mark.asyncio
    async def test_update_task_status(self) -> None:
        scheduler, _, _ = make_scheduler(_scenario_a())
        assert not await scheduler.update_task_status("A", "completed")
        await scheduler.launch("proj-e1", ExecutionSettings(auto_spawn=False))
        assert await scheduler.update_task_status("A", "completed")
        assert scheduler.state.child("B").status == "ready"  # type: ignore[union-attr]
        assert scheduler.progress.completed == 1
        assert not await scheduler.update_task_status("missing", "ready")

    @pytest.mark.asyncio
    async def test_reopening_dependency_blocks_dependents(self) -> None:
        scheduler, _, _ = make_scheduler(_scenario_a())
        await scheduler.launch("proj-e1", ExecutionSettings(auto_spawn=False))
        await scheduler.update_task_status("A", "completed")
        assert scheduler.state.child("B").status == "ready"  # type: ignore[union-attr]

        await scheduler.update_task_status("A", "ready")
        assert scheduler.state.child("B").status == "blocked"  # type: ignore[union-attr]
        assert scheduler.progress.completed == 0
        _assert_invariants(scheduler)

    @pytest.mark.asyncio
    async def test_manual_completion_frees_sequential_slot(self) -> None:
        scheduler, _, spawner = make_scheduler([child("D", 0), child("E", 1)])
        await scheduler.launch("proj-e1", ExecutionSettings(mode="sequential"))
        assert scheduler.running_agents == ["worker-1"]

        assert await scheduler.update_task_status("D", "completed")
        assert scheduler.running_agents == []
        assert scheduler.state.child("D").assignee is None  # type: ignore[union-attr]
        assert scheduler.can_spawn_more()

        result = await scheduler.spawn_next_agent()
        assert result is not None and result.success and result.task_id == "E"
        assert spawner.call_history == ["D", "E"]

    def test_start_epic_without_fetch(self) -> None:
        scheduler, backlog, _ = make_scheduler([])
        scheduler.start_epic("proj-e2", "Direct", _scenario_a())
        assert scheduler.is_active
        assert backlog.call_count == 0
        assert scheduler.status_counts()["ready"] == 2
