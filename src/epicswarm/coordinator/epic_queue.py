"""EpicScheduler: owns one epic's state and every mutation of it.

Entry points that touch the child graph (launch, dispatch, completion,
manual status updates, reconciliation) run under a single
``asyncio.Lock``.  ``stop`` is the exception: it never waits, it bumps
the state generation so in-flight spawn responses are discarded when they
land.

Typical use::

    scheduler = EpicScheduler(backlog, spawner, snapshots=store, claims=publisher)
    result = await scheduler.launch("web-a1b", ExecutionSettings(max_concurrent=2))
    ...
    await scheduler.complete_task("web-a1b.3")   # from the worker-state classifier
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from epicswarm.adapters.base import BacklogStore, Spawner
from epicswarm.config.loader import default_settings, validate_settings
from epicswarm.config.schema import SwarmConfig
from epicswarm.coordinator import graph
from epicswarm.coordinator import scheduler as gate
from epicswarm.coordinator.dispatcher import Dispatcher, SleepFn
from epicswarm.coordinator.event_bus import (
    EPIC_CLOSED_EXTERNALLY,
    EPIC_LAUNCHED,
    EPIC_RECONCILED,
    EPIC_RESTORED,
    EPIC_STOPPED,
    LAUNCH_FAILED,
    TASK_COMPLETED,
    EventBus,
    SwarmEvent,
)
from epicswarm.coordinator.state import EpicQueueState
from epicswarm.errors import (
    BacklogError,
    ConfigurationError,
    EpicSwarmError,
    NoActiveEpicError,
    PersistenceError,
)
from epicswarm.persistence.claims import ClaimPublisher, NullClaimPublisher
from epicswarm.persistence.snapshot import (
    MemorySnapshotStore,
    SnapshotStore,
    clear_active_epic,
    load_active_epic,
    save_active_epic,
)
from epicswarm.protocol.models import (
    BACKLOG_CLOSED,
    BACKLOG_IN_PROGRESS,
    BACKLOG_OPEN,
    ActiveEpicClaim,
    BacklogChild,
    ChildStatus,
    EpicChild,
    EpicProgress,
    ExecutionSettings,
    LaunchResult,
    PersistedEpic,
    SpawnResult,
)

logger = logging.getLogger(__name__)


class EpicScheduler:
    """Dispatches an epic's children to a bounded pool of workers."""

    def __init__(
        self,
        backlog: BacklogStore,
        spawner: Spawner,
        *,
        snapshots: SnapshotStore | None = None,
        claims: ClaimPublisher | None = None,
        event_bus: EventBus | None = None,
        config: SwarmConfig | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._config = config or SwarmConfig()
        self._backlog = backlog
        self._snapshots = snapshots or MemorySnapshotStore()
        self._claims = claims or NullClaimPublisher()
        self._events = event_bus or EventBus()
        self._sleep = sleep
        self._defaults = default_settings(self._config)
        self._state = EpicQueueState(settings=self._defaults)
        self._lock = asyncio.Lock()
        self._reconciler: asyncio.Task[None] | None = None
        self._dispatcher = Dispatcher(
            spawner,
            self._state,
            self._events,
            stagger_seconds=self._config.spawn.stagger_ms / 1000,
            cascade_delay_seconds=self._config.spawn.cascade_delay_ms / 1000,
            sleep=sleep,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def launch(self, epic_id: str, settings: ExecutionSettings | None = None) -> LaunchResult:
        """Fetch the epic's children, install them, persist, and optionally dispatch.

        A fetch failure leaves any previously running epic untouched.
        Raises ConfigurationError for settings that fail validation.
        """
        merged = validate_settings(settings or self._defaults, self._config)
        async with self._lock:
            self._state.last_spawn_error = None
            try:
                fetched = await self._backlog.fetch_children(epic_id)
            except BacklogError as exc:
                error = f"Failed to fetch epic children: {exc}"
                logger.warning("Launch of %s aborted: %s", epic_id, exc)
                self._state.last_spawn_error = error
                self._events.emit(SwarmEvent(event_type=LAUNCH_FAILED, epic_id=epic_id, message=error))
                return LaunchResult(success=False, error=error)

            if self._state.is_active and self._state.epic_id != epic_id:
                logger.info("Replacing active epic %s with %s", self._state.epic_id, epic_id)
            self._install(epic_id, fetched.epic_title or epic_id, fetched.children, merged)

            save_snapshot_ok = self._persist_snapshot(PersistedEpic(epic_id=epic_id, settings=merged))
            await self._publish_claim(ActiveEpicClaim(
                epic_id=epic_id,
                epic_title=self._state.epic_title or epic_id,
                task_ids=[c.id for c in self._state.children],
                review_threshold=merged.review_threshold,
            ))
            counts = gate.status_counts(self._state.children)
            logger.info(
                "Launched epic %s: %d children (%d ready, %d blocked, %d completed)",
                epic_id, len(self._state.children), counts["ready"], counts["blocked"], counts["completed"],
            )
            self._events.emit(SwarmEvent(
                event_type=EPIC_LAUNCHED,
                epic_id=epic_id,
                data={"settings": merged.to_dict(), "counts": counts, "snapshot_saved": save_snapshot_ok},
            ))

            spawn_results: list[SpawnResult] = []
            if merged.auto_spawn:
                spawn_results = await self._spawn_initial_locked()
        return LaunchResult(success=True, spawn_results=spawn_results)

    def start_epic(
        self,
        epic_id: str,
        epic_title: str,
        children: list[BacklogChild],
        settings: ExecutionSettings | None = None,
    ) -> None:
        """Install an epic from already-fetched children without persisting or dispatching."""
        merged = validate_settings(settings or self._defaults, self._config)
        self._install(epic_id, epic_title, children, merged)

    async def stop(self) -> None:
        """Tear the epic down.  Never waits on an in-flight dispatch cycle."""
        epic_id = self._state.epic_id
        was_active = self._state.is_active
        self._state.reset(self._defaults)
        await self.stop_reconciler()

        try:
            clear_active_epic(self._snapshots)
        except PersistenceError as exc:
            logger.warning("Failed to clear epic snapshot: %s", exc)
        try:
            await self._claims.retract()
        except EpicSwarmError as exc:
            logger.warning("Failed to retract claim marker: %s", exc)

        if was_active:
            logger.info("Stopped epic %s", epic_id)
            self._events.emit(SwarmEvent(event_type=EPIC_STOPPED, epic_id=epic_id or ""))

    async def restore(self) -> bool:
        """Relaunch the persisted epic with auto-spawn forced off.

        Workers dispatched before the restart may still be running, so
        nothing is spawned here.  A snapshot that cannot be relaunched is
        deleted.
        """
        snapshot = load_active_epic(self._snapshots)
        if snapshot is None:
            logger.debug("No persisted epic found")
            return False

        logger.info("Restoring epic %s from snapshot", snapshot.epic_id)
        try:
            result = await self.launch(snapshot.epic_id, snapshot.settings.merged(auto_spawn=False))
        except ConfigurationError as exc:
            logger.warning("Persisted settings for %s are invalid: %s", snapshot.epic_id, exc)
            clear_active_epic(self._snapshots)
            return False
        if not result.success:
            logger.warning("Failed to restore epic %s: %s", snapshot.epic_id, result.error)
            clear_active_epic(self._snapshots)
            return False

        self._events.emit(SwarmEvent(event_type=EPIC_RESTORED, epic_id=snapshot.epic_id))
        return True

    def has_persisted_epic(self) -> bool:
        return load_active_epic(self._snapshots) is not None

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def spawn_initial_agents(self) -> list[SpawnResult]:
        """Dispatch the most urgent ready children up to the free capacity."""
        async with self._lock:
            return await self._spawn_initial_locked()

    async def spawn_next_agent(self) -> SpawnResult | None:
        """Dispatch the single most urgent ready child if the gate allows."""
        async with self._lock:
            if not self._state.is_active or not self.can_spawn_more():
                return None
            task = self.next_ready_task()
            if task is None:
                return None
            self._state.is_spawning = True
            try:
                results = await self._dispatcher.dispatch_cascade([task], self.can_spawn_more)
            finally:
                self._state.is_spawning = False
            return results[0] if results else None

    async def complete_task(self, task_id: str) -> list[SpawnResult]:
        """Mark *task_id* completed, release its worker and refill the freed capacity.

        Duplicate or unknown completions are ignored.
        """
        async with self._lock:
            if not self._state.is_active:
                logger.debug("Ignoring completion of %s: no active epic", task_id)
                return []
            child = self._state.child(task_id)
            if child is None:
                logger.warning("Ignoring completion of %s: not a child of epic %s", task_id, self._state.epic_id)
                return []
            if child.status == "completed":
                logger.debug("Ignoring duplicate completion of %s", task_id)
                return []

            previously_blocked = graph.blocked_ids(self._state.children)
            self._release_worker(child)
            child.status = "completed"
            self._state.recompute_progress()
            graph.resolve_statuses(self._state.children)
            unblocked = graph.newly_ready(previously_blocked, self._state.children)

            progress = self._state.progress
            logger.info(
                "Task %s completed (%d/%d), %d newly ready",
                task_id, progress.completed, progress.total, len(unblocked),
            )
            self._events.emit(SwarmEvent(
                event_type=TASK_COMPLETED,
                epic_id=self._state.epic_id or "",
                task_id=task_id,
                data={
                    "completed": progress.completed,
                    "total": progress.total,
                    "unblocked": [c.id for c in unblocked],
                },
            ))

            if not self._state.settings.auto_spawn:
                return []
            return await self._cascade_locked()

    async def update_task_status(
        self,
        task_id: str,
        status: ChildStatus,
        assignee: str | None = None,
    ) -> bool:
        """Set a child's status directly and re-resolve its dependents.

        A child leaving ``in_progress`` gives its worker slot back.  Returns
        False when nothing was updated.
        """
        async with self._lock:
            if not self._state.is_active:
                return False
            child = self._state.child(task_id)
            if child is None:
                return False
            if child.status == "in_progress" and status != "in_progress":
                self._release_worker(child)
            self._state.set_status(task_id, status, assignee)
            graph.resolve_statuses(self._state.children)
            self._state.recompute_progress()
            return True

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def refresh(self, *, cascade: bool = False) -> list[SpawnResult]:
        """Merge authoritative child statuses from the backlog into local state.

        Stops the epic when the backlog reports it closed.  With *cascade*
        and auto-spawn on, ready children are dispatched while capacity allows.
        """
        async with self._lock:
            epic_id = self._state.epic_id
            if not self._state.is_active or not epic_id:
                return []
            generation = self._state.generation
            try:
                fetched = await self._backlog.fetch_children(epic_id)
            except BacklogError as exc:
                logger.warning("Reconciliation of %s skipped: %s", epic_id, exc)
                return []
            if self._state.generation != generation:
                return []

            if fetched.epic_status == BACKLOG_CLOSED:
                logger.info("Epic %s was closed externally, stopping", epic_id)
                self._events.emit(SwarmEvent(event_type=EPIC_CLOSED_EXTERNALLY, epic_id=epic_id))
                await self.stop()
                return []

            previously_blocked = graph.blocked_ids(self._state.children)
            changed = self._merge_backlog(fetched.children)
            graph.resolve_statuses(self._state.children)
            self._state.recompute_progress()
            self._events.emit(SwarmEvent(
                event_type=EPIC_RECONCILED,
                epic_id=epic_id,
                data={"changed": changed, "completed": self._state.progress.completed},
            ))
            if changed:
                logger.info("Reconciled %s: %s", epic_id, changed)

            if not cascade or not self._state.settings.auto_spawn:
                return []
            unblocked = graph.newly_ready(previously_blocked, self._state.children)
            if unblocked:
                logger.info("Reconciliation unblocked %s", [c.id for c in unblocked])
            return await self._cascade_locked()

    def start_reconciler(self, interval_seconds: float | None = None, *, cascade: bool = False) -> asyncio.Task[None]:
        """Run :meth:`refresh` periodically until the epic stops."""
        if not self._state.is_active:
            raise NoActiveEpicError("Cannot reconcile without an active epic")
        if self._reconciler is not None and not self._reconciler.done():
            return self._reconciler
        interval = interval_seconds if interval_seconds is not None else self._config.reconcile.interval_seconds
        self._reconciler = asyncio.create_task(self._reconcile_loop(max(interval, 0.0), cascade))
        return self._reconciler

    async def stop_reconciler(self) -> None:
        task = self._reconciler
        self._reconciler = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _reconcile_loop(self, interval: float, cascade: bool) -> None:
        while self._state.is_active:
            await self._sleep(interval)
            try:
                await self.refresh(cascade=cascade)
            except EpicSwarmError as exc:
                logger.warning("Reconciliation pass failed, retrying next interval: %s", exc)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def next_ready_task(self) -> EpicChild | None:
        ready = self.ready_tasks()
        return ready[0] if ready else None

    def ready_tasks(self) -> list[EpicChild]:
        if not self._state.is_active:
            return []
        return gate.ready_by_priority(self._state.children)

    def in_progress_tasks(self) -> list[EpicChild]:
        return self._state.children_with_status("in_progress")

    def blocked_tasks(self) -> list[EpicChild]:
        return self._state.children_with_status("blocked")

    def status_counts(self) -> dict[str, int]:
        return gate.status_counts(self._state.children)

    def is_epic_complete(self) -> bool:
        progress = self._state.progress
        return self._state.is_active and progress.total > 0 and progress.completed == progress.total

    def can_spawn_more(self) -> bool:
        return gate.can_spawn_more(self._state.settings, len(self._state.running_agents))

    def requires_review(self, priority: int) -> bool:
        return gate.requires_review(priority, self._state.settings.review_threshold)

    def session_for_task(self, task_id: str) -> str | None:
        return self._state.spawned_sessions.get(task_id)

    def clear_spawn_error(self) -> None:
        self._state.last_spawn_error = None

    def snapshot(self) -> dict[str, Any]:
        return self._state.to_dict()

    @property
    def state(self) -> EpicQueueState:
        return self._state

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def epic_id(self) -> str | None:
        return self._state.epic_id

    @property
    def is_active(self) -> bool:
        return self._state.is_active

    @property
    def is_spawning(self) -> bool:
        return self._state.is_spawning

    @property
    def settings(self) -> ExecutionSettings:
        return self._state.settings

    @property
    def progress(self) -> EpicProgress:
        return self._state.progress

    @property
    def running_agents(self) -> list[str]:
        return list(self._state.running_agents)

    @property
    def last_spawn_error(self) -> str | None:
        return self._state.last_spawn_error

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _install(
        self,
        epic_id: str,
        epic_title: str,
        items: list[BacklogChild],
        settings: ExecutionSettings,
    ) -> None:
        children = graph.build_children(items)
        stuck = graph.find_cycle_members(children)
        if stuck:
            logger.warning(
                "Epic %s has a dependency cycle; %d task(s) will stay blocked: %s",
                epic_id, len(stuck), stuck,
            )
        self._state.start(epic_id, epic_title, children, settings)

    async def _spawn_initial_locked(self) -> list[SpawnResult]:
        if not self._state.is_active:
            return [SpawnResult(success=False, error="No active epic")]
        capacity = gate.effective_limit(self._state.settings) - len(self._state.running_agents)
        if capacity <= 0:
            return []
        batch = gate.ready_by_priority(self._state.children)[:capacity]
        self._state.is_spawning = True
        try:
            return await self._dispatcher.dispatch_batch(batch)
        finally:
            self._state.is_spawning = False

    async def _cascade_locked(self) -> list[SpawnResult]:
        # Newly unblocked children and ones that were waiting on capacity compete on priority alike
        candidates = gate.ready_by_priority(self._state.children)
        if not candidates or not self.can_spawn_more():
            return []
        self._state.is_spawning = True
        try:
            return await self._dispatcher.dispatch_cascade(candidates, self.can_spawn_more)
        finally:
            self._state.is_spawning = False

    def _merge_backlog(self, items: list[BacklogChild]) -> dict[str, str]:
        changed: dict[str, str] = {}
        for item in items:
            child = self._state.child(item.id)
            if child is None:
                continue
            new_status: ChildStatus = child.status
            if item.status == BACKLOG_CLOSED:
                new_status = "completed"
            elif child.status == "completed":
                pass  # completed locally before the worker closed it
            elif item.status == BACKLOG_IN_PROGRESS:
                new_status = "in_progress"
            elif item.status == BACKLOG_OPEN:
                dispatched = child.status == "in_progress" and item.id in self._state.spawned_sessions
                if child.status != "blocked" and not dispatched:
                    new_status = "ready"

            releases = new_status == "completed" or (child.status == "in_progress" and new_status != "in_progress")
            if releases:
                if new_status != child.status:
                    self._release_worker(child)
            elif item.assignee and item.assignee != child.assignee:
                # Keep the running set keyed by the name complete_task will release
                if child.assignee and self._state.remove_running_agent(child.assignee):
                    self._state.add_running_agent(item.assignee)
                child.assignee = item.assignee

            if new_status != child.status:
                changed[child.id] = new_status
                child.status = new_status
        return changed

    def _release_worker(self, child: EpicChild) -> None:
        if child.assignee:
            self._state.remove_running_agent(child.assignee)
        child.assignee = None

    def _persist_snapshot(self, snapshot: PersistedEpic) -> bool:
        try:
            save_active_epic(self._snapshots, snapshot)
        except PersistenceError as exc:
            logger.warning("Failed to persist epic snapshot: %s", exc)
            return False
        return True

    async def _publish_claim(self, claim: ActiveEpicClaim) -> None:
        try:
            await self._claims.publish(claim)
        except EpicSwarmError as exc:
            logger.warning("Failed to publish claim marker for %s: %s", claim.epic_id, exc)
