"""Dispatcher: turns ready children into spawn requests.

Two shapes of dispatch:

1. ``dispatch_batch``: the initial fan-out on launch.  Requests run
   concurrently, request *i* starting ``i * stagger`` after the first.
2. ``dispatch_cascade``: the refill after a completion.  One request at a
   time with a pause in between, stopping as soon as the gate closes.

The caller holds the scheduler lock for the duration of either call.
Every outcome is applied to the state store as it arrives, unless the
epic was stopped or replaced in the meantime.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from epicswarm.adapters.base import Spawner
from epicswarm.coordinator.event_bus import (
    BATCH_COMPLETED,
    DISPATCH_FAILED,
    DISPATCH_STARTED,
    DISPATCH_SUCCEEDED,
    EventBus,
    SwarmEvent,
)
from epicswarm.coordinator.state import EpicQueueState
from epicswarm.protocol.models import EpicChild, SpawnResult

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class Dispatcher:
    def __init__(
        self,
        spawner: Spawner,
        state: EpicQueueState,
        event_bus: EventBus,
        *,
        stagger_seconds: float = 0.5,
        cascade_delay_seconds: float = 1.0,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._spawner = spawner
        self._state = state
        self._event_bus = event_bus
        self._stagger = max(stagger_seconds, 0.0)
        self._cascade_delay = max(cascade_delay_seconds, 0.0)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def dispatch_batch(self, tasks: list[EpicChild]) -> list[SpawnResult]:
        """Spawn workers for *tasks* concurrently with staggered starts.

        *tasks* must already be trimmed to the available capacity and
        sorted by priority.  Returns one result per task, in task order,
        once every request has finished.
        """
        if not tasks:
            return [SpawnResult(success=False, error="No ready tasks to spawn")]
        generation = self._state.generation
        started = time.monotonic()
        total = len(tasks)
        logger.info("Dispatching %d task(s): %s", total, [t.id for t in tasks])

        coros = [
            self._spawn_one(task.id, generation, delay=i * self._stagger, label=f"{i + 1}/{total}")
            for i, task in enumerate(tasks)
        ]
        results = list(await asyncio.gather(*coros))

        succeeded = sum(1 for r in results if r.success)
        failed = [r.task_id for r in results if not r.success]
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info("Batch finished: %d/%d succeeded in %dms", succeeded, total, elapsed_ms)
        if failed:
            logger.warning("Failed tasks: %s", failed)
        self._event_bus.emit(SwarmEvent(
            event_type=BATCH_COMPLETED,
            epic_id=self._state.epic_id or "",
            data={"succeeded": succeeded, "failed": failed, "elapsed_ms": elapsed_ms},
        ))
        return results

    async def dispatch_cascade(
        self,
        candidates: list[EpicChild],
        can_spawn: Callable[[], bool],
    ) -> list[SpawnResult]:
        """Spawn *candidates* one by one while *can_spawn* allows."""
        generation = self._state.generation
        results: list[SpawnResult] = []
        for index, task in enumerate(candidates):
            if self._state.generation != generation or not can_spawn():
                break
            if task.status != "ready":
                continue
            if index > 0 and results:
                await self._sleep(self._cascade_delay)
                if self._state.generation != generation or not can_spawn():
                    break
            results.append(await self._spawn_one(task.id, generation, label="cascade"))
        return results

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _spawn_one(
        self,
        task_id: str,
        generation: int,
        *,
        delay: float = 0.0,
        label: str = "",
    ) -> SpawnResult:
        if delay > 0:
            await self._sleep(delay)

        epic_id = self._state.epic_id or ""
        if self._state.generation != generation:
            return SpawnResult(success=False, task_id=task_id, error="Epic stopped before dispatch")

        self._event_bus.emit(SwarmEvent(event_type=DISPATCH_STARTED, epic_id=epic_id, task_id=task_id))
        logger.debug("[%s] %s: sending spawn request", label, task_id)
        started = time.monotonic()
        try:
            result = await self._spawner.spawn(task_id)
        except Exception as exc:
            logger.warning("[%s] %s: spawn raised %s", label, task_id, exc)
            result = SpawnResult(success=False, task_id=task_id, error=str(exc) or type(exc).__name__)
        if result.task_id is None:
            result.task_id = task_id
        elapsed_ms = int((time.monotonic() - started) * 1000)

        self._apply(result, generation, epic_id, elapsed_ms)
        return result

    def _apply(self, result: SpawnResult, generation: int, epic_id: str, elapsed_ms: int) -> None:
        task_id = result.task_id or ""
        if self._state.generation != generation or not self._state.is_active:
            logger.info("Discarding spawn result for %s: epic %s no longer active", task_id, epic_id)
            return

        if not result.success:
            error = result.error or "Failed to spawn agent"
            self._state.last_spawn_error = error
            logger.warning("Spawn failed for %s after %dms: %s", task_id, elapsed_ms, error)
            self._event_bus.emit(SwarmEvent(
                event_type=DISPATCH_FAILED,
                epic_id=epic_id,
                task_id=task_id,
                message=error,
                data={"elapsed_ms": elapsed_ms},
            ))
            return

        # A worker id is the running-set token; fall back so capacity is still counted.
        worker_id = result.worker_id or result.session_id or f"worker-{task_id}"
        self._state.record_spawn(task_id, worker_id, result.session_id)
        logger.info("Spawned %s for %s in %dms", worker_id, task_id, elapsed_ms)
        self._event_bus.emit(SwarmEvent(
            event_type=DISPATCH_SUCCEEDED,
            epic_id=epic_id,
            task_id=task_id,
            worker_id=worker_id,
            data={"session_id": result.session_id, "elapsed_ms": elapsed_ms},
        ))
