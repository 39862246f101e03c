"""Task lifecycle: configuration, orchestration and scheduling."""

from automation_service.tasks.config import TaskConfig
from automation_service.tasks.orchestrator import ExecutionSummary, TaskOrchestrator
from automation_service.tasks.results import StageResult
from automation_service.tasks.scheduler import TaskScheduler

__all__ = [
    "ExecutionSummary",
    "StageResult",
    "TaskConfig",
    "TaskOrchestrator",
    "TaskScheduler",
]
