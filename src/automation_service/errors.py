"""Error taxonomy shared by the orchestrator, storage and API layers."""

from __future__ import annotations


class AutomationServiceError(Exception):
    """Base class for errors surfaced to callers of the service."""


class TaskNotFoundError(AutomationServiceError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task with ID {task_id} not found")
        self.task_id = task_id


class ResultNotFoundError(AutomationServiceError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"No result found for task {task_id}")
        self.task_id = task_id


class UnauthorizedError(AutomationServiceError):
    """Missing, unknown, inactive or expired API key."""


class ForbiddenError(AutomationServiceError):
    """Caller tried to access a task owned by somebody else."""


class TaskValidationError(AutomationServiceError):
    """Required fields missing from a create request."""


class TaskConflictError(AutomationServiceError):
    """Execution requested for a task that is not pending."""

    def __init__(self, task_id: str, status: str) -> None:
        super().__init__(f"Task {task_id} cannot be executed from status '{status}'")
        self.task_id = task_id
        self.status = status


class BrowserNotReadyError(AutomationServiceError):
    """A page operation was attempted without an active page."""


class InfrastructureError(AutomationServiceError):
    """Store, browser engine or text-generation backend is unavailable."""
