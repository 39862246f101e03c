from __future__ import annotations

import asyncio

import pytest

from automation_service.storage.memory import InMemoryTaskStorage
from automation_service.tasks.orchestrator import CANCELLED_ERROR, TaskOrchestrator
from automation_service.tasks.scheduler import TaskScheduler

CONFIG = {"selectors": [{"name": "title", "selector": "h1"}]}


async def _create(orchestrator: TaskOrchestrator, name: str):
    return await orchestrator.create_task(
        {"name": name, "url": "https://example.com", "config": CONFIG}
    )


async def test_tick_claims_and_runs_due_tasks(
    orchestrator: TaskOrchestrator, storage: InMemoryTaskStorage
) -> None:
    first = await _create(orchestrator, "first")
    second = await _create(orchestrator, "second")
    scheduler = TaskScheduler(orchestrator, interval_s=60)

    assert await scheduler.tick() == 2
    # Claimed synchronously inside tick, before any run finishes.
    assert (await storage.get_task(first.id)).status in {"running", "completed"}

    await scheduler.stop(grace_s=5)

    for task in (first, second):
        assert (await storage.get_task(task.id)).status == "completed"
        assert await storage.get_latest_result(task.id) is not None


async def test_second_tick_does_not_restart_claimed_task(
    orchestrator: TaskOrchestrator, storage: InMemoryTaskStorage
) -> None:
    task = await _create(orchestrator, "once")
    scheduler = TaskScheduler(orchestrator, interval_s=60)

    assert await scheduler.tick() == 1
    assert await scheduler.tick() == 0
    await scheduler.stop(grace_s=5)

    assert len([item for item in storage._results if item.task_id == task.id]) == 1


async def test_lost_claim_is_skipped(
    monkeypatch: pytest.MonkeyPatch, orchestrator: TaskOrchestrator
) -> None:
    task = await _create(orchestrator, "raced")
    stale = [task]
    await orchestrator.claim_task(task.id)

    async def stale_pending():
        return stale

    monkeypatch.setattr(orchestrator, "get_pending_tasks", stale_pending)
    scheduler = TaskScheduler(orchestrator, interval_s=60)

    assert await scheduler.tick() == 0
    assert scheduler.in_flight == 0


async def test_claim_error_skips_only_that_task(
    monkeypatch: pytest.MonkeyPatch,
    orchestrator: TaskOrchestrator,
    storage: InMemoryTaskStorage,
) -> None:
    broken = await _create(orchestrator, "broken")
    healthy = await _create(orchestrator, "healthy")
    real_claim = orchestrator.claim_task

    async def flaky_claim(task_id: str):
        if task_id == broken.id:
            raise ConnectionError("connection reset")
        return await real_claim(task_id)

    monkeypatch.setattr(orchestrator, "claim_task", flaky_claim)
    scheduler = TaskScheduler(orchestrator, interval_s=60)

    assert await scheduler.tick() == 1
    await scheduler.stop(grace_s=5)

    assert (await storage.get_task(healthy.id)).status == "completed"
    assert (await storage.get_task(broken.id)).status == "pending"


async def test_spawned_execution_errors_are_logged_not_raised(
    orchestrator: TaskOrchestrator,
) -> None:
    scheduler = TaskScheduler(orchestrator, interval_s=60)

    outcome = await scheduler.spawn_execution("missing-task")

    assert outcome is None


async def test_stop_drains_in_flight_executions(
    orchestrator: TaskOrchestrator, storage: InMemoryTaskStorage
) -> None:
    task = await _create(orchestrator, "drain")
    scheduler = TaskScheduler(orchestrator, interval_s=60)
    scheduler.spawn_execution(task.id)

    await scheduler.stop(grace_s=5)

    assert (await storage.get_task(task.id)).status == "completed"


async def test_stop_abandons_runs_past_grace_period(
    monkeypatch: pytest.MonkeyPatch, orchestrator: TaskOrchestrator
) -> None:
    async def hanging_execute(task_id: str):
        await asyncio.sleep(30)

    monkeypatch.setattr(orchestrator, "execute_task", hanging_execute)
    scheduler = TaskScheduler(orchestrator, interval_s=60)
    execution = scheduler.spawn_execution("slow")

    await scheduler.stop(grace_s=0.05)

    with pytest.raises(asyncio.CancelledError):
        await execution


async def test_run_cancelled_at_shutdown_is_recorded_as_failed(
    monkeypatch: pytest.MonkeyPatch,
    orchestrator: TaskOrchestrator,
    storage: InMemoryTaskStorage,
    browser,
) -> None:
    async def stuck_navigate(url, session=None):
        await asyncio.sleep(30)

    monkeypatch.setattr(orchestrator.driver, "navigate", stuck_navigate)
    task = await _create(orchestrator, "stuck")
    scheduler = TaskScheduler(orchestrator, interval_s=60)

    assert await scheduler.tick() == 1
    await scheduler.stop(grace_s=0.05)

    stored = await storage.get_task(task.id)
    assert stored.status == "failed"
    assert stored.error == CANCELLED_ERROR
    result = await storage.get_latest_result(task.id)
    assert result is not None
    assert result.status == "failed"
    assert result.error == CANCELLED_ERROR
    errors = [entry for entry in await storage.get_logs(task.id) if entry.level == "error"]
    assert [entry.message for entry in errors] == [f"Task execution failed: {CANCELLED_ERROR}"]
    assert browser.contexts[0].closed
    assert await orchestrator.get_pending_tasks() == []


async def test_start_and_stop_loop(orchestrator: TaskOrchestrator) -> None:
    scheduler = TaskScheduler(orchestrator, interval_s=60)

    await scheduler.start()
    assert scheduler.is_running
    await scheduler.start()

    await scheduler.stop(grace_s=1)
    assert not scheduler.is_running


async def test_loop_picks_up_due_task(
    orchestrator: TaskOrchestrator, storage: InMemoryTaskStorage
) -> None:
    task = await _create(orchestrator, "looped")
    scheduler = TaskScheduler(orchestrator, interval_s=0.01)

    await scheduler.start()
    for _ in range(200):
        if (await storage.get_task(task.id)).status == "completed":
            break
        await asyncio.sleep(0.01)
    await scheduler.stop(grace_s=5)

    assert (await storage.get_task(task.id)).status == "completed"
