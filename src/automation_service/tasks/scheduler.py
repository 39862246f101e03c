"""Fixed-interval poller that executes due pending tasks."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

from automation_service.tasks.orchestrator import ExecutionSummary, TaskOrchestrator

logger = logging.getLogger(__name__)

_CANCEL_SETTLE_S = 5.0


class TaskScheduler:
    """Polls for due tasks every ``interval_s`` seconds.

    Each due task is claimed (pending -> running in one statement) before it
    is handed off, so a task picked up by an earlier tick is never started
    twice. Executions run as fire-and-forget asyncio tasks with no
    concurrency cap; they are tracked only so shutdown can drain them.
    """

    def __init__(self, orchestrator: TaskOrchestrator, *, interval_s: float = 60.0) -> None:
        self.orchestrator = orchestrator
        self.interval_s = interval_s
        self._running = False
        self._loop_task: asyncio.Task[None] | None = None
        self._in_flight: set[asyncio.Task[ExecutionSummary | None]] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def start(self) -> None:
        if self._running:
            logger.warning("scheduler event=already_running")
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info("scheduler event=started interval_s=%s", self.interval_s)

    async def stop(self, grace_s: float = 30.0) -> None:
        """Stop ticking, wait up to ``grace_s`` for in-flight runs, abandon the rest."""
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        pending = set(self._in_flight)
        if pending:
            logger.info("scheduler event=draining in_flight=%d grace_s=%s", len(pending), grace_s)
            _, still_running = await asyncio.wait(pending, timeout=grace_s)
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning("scheduler event=abandoned count=%d", len(still_running))
                # Cancelled runs still record their failure before storage closes.
                await asyncio.wait(still_running, timeout=_CANCEL_SETTLE_S)
        logger.info("scheduler event=stopped")

    async def tick(self) -> int:
        """Claim every due task and start it; returns how many were started."""
        due = await self.orchestrator.get_pending_tasks()
        if due:
            logger.info("scheduler event=due count=%d", len(due))
        started = 0
        for task in due:
            try:
                claimed = await self.orchestrator.claim_task(task.id)
            except Exception as exc:  # noqa: BLE001
                logger.error("scheduler event=claim_failed task_id=%s reason=%s", task.id, exc)
                continue
            if claimed is None:
                logger.info("scheduler event=claim_lost task_id=%s", task.id)
                continue
            logger.info("scheduler event=dispatch task_id=%s name=%s", claimed.id, claimed.name)
            self._track(self.orchestrator.run_claimed(claimed), claimed.id)
            started += 1
        return started

    def spawn_execution(self, task_id: str) -> asyncio.Task[ExecutionSummary | None]:
        """Run ``execute_task`` detached; failures are logged, never raised."""
        return self._track(self.orchestrator.execute_task(task_id), task_id)

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception as exc:  # noqa: BLE001
                logger.error("scheduler event=tick_failed reason=%s", exc)
            await asyncio.sleep(self.interval_s)

    def _track(
        self, coro: Coroutine[Any, Any, ExecutionSummary], task_id: str
    ) -> asyncio.Task[ExecutionSummary | None]:
        task = asyncio.create_task(self._guard(coro, task_id))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    @staticmethod
    async def _guard(
        coro: Coroutine[Any, Any, ExecutionSummary], task_id: str
    ) -> ExecutionSummary | None:
        try:
            return await coro
        except Exception as exc:  # noqa: BLE001
            logger.error("task_run event=execution_error task_id=%s reason=%s", task_id, exc)
            return None
