"""Task lifecycle and execution orchestration.

``execute_task`` is the state machine entry point:

1. load the task (missing -> ``TaskNotFoundError``) and atomically claim it
   (pending -> running, otherwise ``TaskConflictError``);
2. run the browser/normalization pipeline, where every stage yields a
   ``StageResult`` and the first failure stops the pipeline;
3. always close the browser context;
4. persist the result row and the terminal task status in one transaction.

Only load/claim and the final write can raise out of ``execute_task``. A run
cancelled mid-pipeline is recorded as failed before the cancellation propagates.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, get_args

from pydantic import BaseModel, TypeAdapter, ValidationError

from automation_service.browser.driver import AutomationDriver, BrowserSession
from automation_service.errors import (
    TaskConflictError,
    TaskNotFoundError,
    TaskValidationError,
)
from automation_service.normalization.adapter import DEFAULT_TASK, NormalizationAdapter
from automation_service.storage.base import TaskStorage
from automation_service.storage.models import (
    UPDATABLE_TASK_FIELDS,
    LogLevel,
    TaskLogRecord,
    TaskRecord,
    TaskResultRecord,
    TaskStatus,
)
from automation_service.tasks.config import TaskConfig
from automation_service.tasks.results import StageResult, run_stage

logger = logging.getLogger(__name__)

_OPTIONAL_DATETIME = TypeAdapter(datetime | None)
CANCELLED_ERROR = "Task execution cancelled"


class ExecutionSummary(BaseModel):
    """What ``execute_task`` hands back to its caller."""

    task_id: str
    result_id: str
    status: TaskStatus
    processing_time: int
    error: str | None = None
    raw_data: dict[str, Any] | None = None
    normalized_data: Any = None


@dataclass
class _PipelineState:
    session: BrowserSession | None = None
    raw_data: dict[str, Any] | None = None
    normalized_data: Any = None
    error: str | None = None


class TaskOrchestrator:
    """Coordinates storage, the automation driver and the normalization adapter."""

    def __init__(
        self,
        *,
        storage: TaskStorage,
        driver: AutomationDriver,
        normalizer: NormalizationAdapter,
    ) -> None:
        self.storage = storage
        self.driver = driver
        self.normalizer = normalizer
        self._browser_lock = asyncio.Lock()

    async def create_task(self, data: dict[str, Any]) -> TaskRecord:
        missing = [key for key in ("name", "url") if not data.get(key)]
        if missing:
            raise TaskValidationError(f"Missing required fields: {', '.join(missing)}")
        task = await self.storage.create_task(
            name=data["name"],
            url=data["url"],
            description=data.get("description"),
            config=_coerce_config(data.get("config")),
            scheduled_for=_coerce_datetime(data.get("scheduled_for")),
            user_id=data.get("user_id"),
        )
        logger.info("task event=created task_id=%s user_id=%s", task.id, task.user_id)
        return task

    async def get_task(self, task_id: str) -> TaskRecord:
        task = await self.storage.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def list_tasks(self, user_id: str | None = None) -> list[TaskRecord]:
        return await self.storage.list_tasks(user_id)

    async def update_task(self, task_id: str, fields: dict[str, Any]) -> TaskRecord:
        """Apply allow-listed fields; unknown keys are dropped, updated_at always moves."""
        changes = {key: value for key, value in fields.items() if key in UPDATABLE_TASK_FIELDS}
        if "status" in changes and changes["status"] not in get_args(TaskStatus):
            raise TaskValidationError(f"Unknown task status: {changes['status']!r}")
        if "config" in changes:
            changes["config"] = _coerce_config(changes["config"])
        if "scheduled_for" in changes:
            changes["scheduled_for"] = _coerce_datetime(changes["scheduled_for"])
        for key in ("name", "url"):
            if key in changes and not changes[key]:
                raise TaskValidationError(f"Field '{key}' cannot be empty")
        updated = await self.storage.update_task(task_id, changes)
        if updated is None:
            raise TaskNotFoundError(task_id)
        return updated

    async def delete_task(self, task_id: str) -> None:
        if not await self.storage.delete_task(task_id):
            raise TaskNotFoundError(task_id)
        logger.info("task event=deleted task_id=%s", task_id)

    async def get_task_result(self, task_id: str) -> TaskResultRecord | None:
        return await self.storage.get_latest_result(task_id)

    async def get_task_logs(self, task_id: str) -> list[TaskLogRecord]:
        return await self.storage.get_logs(task_id)

    async def get_pending_tasks(self) -> list[TaskRecord]:
        return await self.storage.get_pending_tasks(datetime.now(UTC))

    async def claim_task(self, task_id: str) -> TaskRecord | None:
        return await self.storage.claim_task(task_id)

    async def execute_task(self, task_id: str) -> ExecutionSummary:
        try:
            task = await self.get_task(task_id)
            claimed = await self.storage.claim_task(task_id)
        except Exception as exc:
            logger.error("task_run event=load_failed task_id=%s reason=%s", task_id, exc)
            await self._mark_failed_best_effort(task_id, exc)
            raise
        if claimed is None:
            raise TaskConflictError(task_id, task.status)
        return await self.run_claimed(claimed)

    async def run_claimed(self, task: TaskRecord) -> ExecutionSummary:
        """Execute a task that is already in ``running`` state."""
        logger.info("task_run event=start task_id=%s status=running", task.id)
        started = time.monotonic()
        try:
            await self.log_task(task.id, "info", "Task execution started")
            state = await self._run_pipeline(task)
        except asyncio.CancelledError:
            elapsed = max(0, int((time.monotonic() - started) * 1000))
            # A second cancel must not interrupt the terminal write.
            await asyncio.shield(self._record_cancellation(task.id, elapsed))
            raise

        processing_time = max(0, int((time.monotonic() - started) * 1000))
        status: TaskStatus = "failed" if state.error else "completed"
        try:
            result = await self.storage.record_outcome(
                task.id,
                status=status,
                raw_data=state.raw_data,
                normalized_data=state.normalized_data,
                processing_time=processing_time,
                error=state.error,
            )
        except Exception as exc:
            logger.error("task_run event=persist_failed task_id=%s reason=%s", task.id, exc)
            await self._mark_failed_best_effort(task.id, exc)
            raise

        logger.info(
            "task_run event=completed task_id=%s status=%s processing_time_ms=%d",
            task.id,
            status,
            processing_time,
        )
        await self.log_task(
            task.id,
            "info",
            f"Task execution {status}",
            {"processingTime": processing_time},
        )
        return ExecutionSummary(
            task_id=task.id,
            result_id=result.id,
            status=status,
            processing_time=processing_time,
            error=state.error,
            raw_data=state.raw_data,
            normalized_data=state.normalized_data,
        )

    async def log_task(
        self,
        task_id: str,
        level: LogLevel,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append a TaskLog row; a failed write is logged and swallowed."""
        try:
            await self.storage.append_log(task_id, level, message, metadata)
        except Exception as exc:  # noqa: BLE001
            logger.error("task_log event=write_failed task_id=%s reason=%s", task_id, exc)

    async def _run_pipeline(self, task: TaskRecord) -> _PipelineState:
        state = _PipelineState()
        failure: StageResult[Any] | None = None
        try:
            failure = await self._run_stages(task, state)
        finally:
            if state.session is not None:
                await state.session.close()
        if failure is not None:
            state.error = failure.error
            await self.log_task(
                task.id,
                "error",
                f"Task execution failed: {failure.error}",
                {"stage": failure.stage, "stack": failure.trace},
            )
        return state

    async def _run_stages(self, task: TaskRecord, state: _PipelineState) -> StageResult[Any] | None:
        """Run stages in order and return the first failure, or None."""
        try:
            config = TaskConfig.model_validate(task.config or {})
        except ValidationError as exc:
            return StageResult.failure(exc, stage="config")

        step: StageResult[Any] = await run_stage("browser", self._ensure_browser())
        if not step.ok:
            return step

        step = await run_stage("context", self.driver.create_context(config.user_data_key))
        if not step.ok:
            return step
        state.session = step.data

        if config.credentials is not None:
            step = await run_stage("login", self.driver.login(state.session, config.credentials))
            if not step.ok:
                return step
            await self.log_task(task.id, "info", "Login successful")

        step = await run_stage("navigate", self.driver.navigate(task.url, state.session))
        if not step.ok:
            return step

        step = await run_stage("extract", self.driver.extract_data(state.session, config.selectors))
        if not step.ok:
            return step
        state.raw_data = step.data
        await self.log_task(
            task.id,
            "info",
            "Data extraction completed",
            {"dataSize": _data_size(state.raw_data)},
        )

        if config.process_with_ai:
            step = await run_stage(
                "normalize",
                self.normalizer.process_data(
                    state.raw_data,
                    task=config.ai_task or DEFAULT_TASK,
                    output_format=config.output_format,
                    schema=config.output_schema,
                ),
            )
            if not step.ok:
                return step
            state.normalized_data = step.data
            await self.log_task(
                task.id,
                "info",
                "AI processing completed",
                {"dataSize": _data_size(state.normalized_data)},
            )
        else:
            state.normalized_data = state.raw_data

        if config.take_screenshot:
            step = await run_stage(
                "screenshot",
                self.driver.take_screenshot(state.session, full_page=config.full_page_screenshot),
            )
            if not step.ok:
                return step
            await self.log_task(
                task.id, "info", "Screenshot captured", {"screenshotSize": len(step.data)}
            )
        return None

    async def _ensure_browser(self) -> None:
        async with self._browser_lock:
            if not self.driver.is_initialized:
                await self.driver.initialize()

    async def _record_cancellation(self, task_id: str, processing_time: int) -> None:
        """Close out a run interrupted by shutdown so the task does not stay ``running``."""
        logger.warning("task_run event=cancelled task_id=%s", task_id)
        try:
            await self.storage.record_outcome(
                task_id,
                status="failed",
                raw_data=None,
                normalized_data=None,
                processing_time=processing_time,
                error=CANCELLED_ERROR,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("task_run event=persist_failed task_id=%s reason=%s", task_id, exc)
            await self._mark_failed_best_effort(task_id, RuntimeError(CANCELLED_ERROR))
            return
        await self.log_task(task_id, "error", f"Task execution failed: {CANCELLED_ERROR}")

    async def _mark_failed_best_effort(self, task_id: str, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        try:
            updated = await self.storage.mark_task_failed(task_id, message)
        except Exception as mark_exc:  # noqa: BLE001
            logger.error(
                "task_run event=mark_failed_failed task_id=%s reason=%s", task_id, mark_exc
            )
            return
        if updated is not None:
            await self.log_task(task_id, "error", f"Task execution failed: {message}")


def _coerce_config(raw: Any) -> dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise TaskValidationError("Field 'config' must be an object")
    return raw


def _coerce_datetime(raw: Any) -> datetime | None:
    try:
        value = _OPTIONAL_DATETIME.validate_python(raw)
    except ValidationError as exc:
        raise TaskValidationError(f"Invalid scheduled_for value: {raw!r}") from exc
    if value is not None and value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def _data_size(data: Any) -> int:
    return len(json.dumps(data, default=str))
