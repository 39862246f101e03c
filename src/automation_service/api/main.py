"""FastAPI app entrypoint for the automation service.

Run with ``uvicorn --factory automation_service.api.main:create_app`` or the
``automation-service`` console script.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from automation_service import __version__
from automation_service.api.auth import require_api_key
from automation_service.api.schemas import (
    AnalyzeWebpageRequest,
    CreateTaskRequest,
    ExecuteTaskResponse,
    GenerateInstructionsRequest,
    ProcessDataRequest,
)
from automation_service.browser.driver import AutomationDriver
from automation_service.browser.session_store import SessionStore
from automation_service.config.settings import Settings, get_settings
from automation_service.errors import (
    AutomationServiceError,
    ForbiddenError,
    InfrastructureError,
    ResultNotFoundError,
    TaskConflictError,
    TaskNotFoundError,
    TaskValidationError,
    UnauthorizedError,
)
from automation_service.normalization.adapter import NormalizationAdapter
from automation_service.normalization.llm import TextGenerator, build_text_generator
from automation_service.storage.base import TaskStorage
from automation_service.storage.models import (
    ApiPrincipal,
    TaskLogRecord,
    TaskRecord,
    TaskResultRecord,
)
from automation_service.storage.postgres import PostgresTaskStorage
from automation_service.tasks.orchestrator import TaskOrchestrator
from automation_service.tasks.scheduler import TaskScheduler

logger = logging.getLogger(__name__)

_ERROR_STATUS: dict[type[AutomationServiceError], int] = {
    TaskNotFoundError: 404,
    ResultNotFoundError: 404,
    UnauthorizedError: 401,
    ForbiddenError: 403,
    TaskValidationError: 400,
    TaskConflictError: 409,
    InfrastructureError: 500,
}


def create_app(
    *,
    storage: TaskStorage | None = None,
    driver: AutomationDriver | None = None,
    text_generator: TextGenerator | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()
    configure_logging(settings.log_level)

    if storage is None:
        database_url = settings.resolved_database_url()
        if not database_url:
            raise RuntimeError(
                "Missing database URL. Set AUTOMATION_DATABASE_URL "
                "or DATABASE_URL before starting the app."
            )
        storage = PostgresTaskStorage(database_url)

    if driver is None:
        driver = AutomationDriver(
            session_store=SessionStore(storage),
            headless=settings.browser_headless,
            slow_mo_ms=settings.browser_slow_mo_ms,
            default_timeout_ms=settings.browser_default_timeout_ms,
        )
    normalizer = NormalizationAdapter(
        text_generator if text_generator is not None else build_text_generator(settings),
        timeout_s=settings.llm_timeout_s,
    )
    orchestrator = TaskOrchestrator(storage=storage, driver=driver, normalizer=normalizer)
    scheduler = TaskScheduler(orchestrator, interval_s=settings.scheduler_interval_s)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await storage.migrate()
        if settings.scheduler_enabled:
            await scheduler.start()
        try:
            yield
        finally:
            # Order matters: no new ticks, then drain runs, then the browser, then the pool.
            await scheduler.stop(grace_s=settings.shutdown_grace_s)
            await driver.close()
            await storage.close()
            logger.info("app event=shutdown_complete")

    app = FastAPI(title=settings.app_name, version=__version__, lifespan=lifespan)
    # Shared objects live in app.state so route handlers and tests can reach them.
    app.state.settings = settings
    app.state.storage = storage
    app.state.driver = driver
    app.state.normalizer = normalizer
    app.state.orchestrator = orchestrator
    app.state.scheduler = scheduler

    @app.exception_handler(AutomationServiceError)
    async def handle_service_error(request: Request, exc: AutomationServiceError) -> JSONResponse:
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error("api event=error path=%s reason=%s", request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"error": str(exc)})

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.post("/tasks", response_model=TaskRecord, status_code=201)
    async def create_task(
        payload: CreateTaskRequest,
        principal: ApiPrincipal = Depends(require_api_key),
    ) -> TaskRecord:
        data = payload.model_dump()
        data["user_id"] = principal.user_id
        return await app.state.orchestrator.create_task(data)

    @app.get("/tasks", response_model=list[TaskRecord])
    async def list_tasks(principal: ApiPrincipal = Depends(require_api_key)) -> list[TaskRecord]:
        return await app.state.orchestrator.list_tasks(principal.user_id)

    @app.get("/tasks/{task_id}", response_model=TaskRecord)
    async def get_task(
        task_id: str, principal: ApiPrincipal = Depends(require_api_key)
    ) -> TaskRecord:
        return await _owned_task(task_id, principal)

    @app.put("/tasks/{task_id}", response_model=TaskRecord)
    async def update_task(
        task_id: str,
        payload: dict[str, Any] = Body(...),
        principal: ApiPrincipal = Depends(require_api_key),
    ) -> TaskRecord:
        await _owned_task(task_id, principal)
        return await app.state.orchestrator.update_task(task_id, payload)

    @app.delete("/tasks/{task_id}", status_code=204)
    async def delete_task(
        task_id: str, principal: ApiPrincipal = Depends(require_api_key)
    ) -> Response:
        await _owned_task(task_id, principal)
        await app.state.orchestrator.delete_task(task_id)
        return Response(status_code=204)

    @app.post("/tasks/{task_id}/execute", response_model=ExecuteTaskResponse, status_code=202)
    async def execute_task(
        task_id: str, principal: ApiPrincipal = Depends(require_api_key)
    ) -> ExecuteTaskResponse:
        task = await _owned_task(task_id, principal)
        if task.status != "pending":
            raise TaskConflictError(task_id, task.status)
        # Detached: execution errors are logged server-side, not returned here.
        app.state.scheduler.spawn_execution(task_id)
        return ExecuteTaskResponse(message="Task execution started", task_id=task_id)

    @app.get("/tasks/{task_id}/result", response_model=TaskResultRecord)
    async def get_task_result(
        task_id: str, principal: ApiPrincipal = Depends(require_api_key)
    ) -> TaskResultRecord:
        await _owned_task(task_id, principal)
        result = await app.state.orchestrator.get_task_result(task_id)
        if result is None:
            raise ResultNotFoundError(task_id)
        return result

    @app.get("/tasks/{task_id}/logs", response_model=list[TaskLogRecord])
    async def get_task_logs(
        task_id: str, principal: ApiPrincipal = Depends(require_api_key)
    ) -> list[TaskLogRecord]:
        await _owned_task(task_id, principal)
        return await app.state.orchestrator.get_task_logs(task_id)

    @app.post("/ai/process", dependencies=[Depends(require_api_key)])
    async def process_data(payload: ProcessDataRequest) -> Any:
        if not payload.data:
            raise HTTPException(status_code=400, detail="Data is required")
        return await app.state.normalizer.process_data(
            payload.data,
            task=payload.options.task,
            output_format=payload.options.format,
            schema=payload.options.output_schema,
        )

    @app.post("/ai/generate-instructions", dependencies=[Depends(require_api_key)])
    async def generate_instructions(payload: GenerateInstructionsRequest) -> Any:
        if not payload.task_description:
            raise HTTPException(status_code=400, detail="Task description is required")
        return await app.state.normalizer.generate_automation_instructions(
            payload.task_description
        )

    @app.post("/ai/analyze-webpage", dependencies=[Depends(require_api_key)])
    async def analyze_webpage(payload: AnalyzeWebpageRequest) -> Any:
        if not payload.html or not payload.url:
            raise HTTPException(status_code=400, detail="HTML and URL are required")
        return await app.state.normalizer.analyze_webpage(payload.html, payload.url)

    async def _owned_task(task_id: str, principal: ApiPrincipal) -> TaskRecord:
        task = await app.state.orchestrator.get_task(task_id)
        if task.user_id != principal.user_id:
            raise ForbiddenError("Unauthorized access to this task")
        return task

    return app


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _status_for(exc: AutomationServiceError) -> int:
    for error_type, status_code in _ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


def run() -> None:
    """Console entry point."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "automation_service.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
    )
