"""Storage interface for the task lifecycle, sessions, credentials and API keys."""

from __future__ import annotations

import secrets
from datetime import datetime
from typing import Any, Protocol

from automation_service.storage.models import (
    ApiKeyRecord,
    ApiPrincipal,
    CredentialRecord,
    LogLevel,
    ResultStatus,
    SessionSnapshot,
    TaskLogRecord,
    TaskRecord,
    TaskResultRecord,
    UserRecord,
)


class TaskStorage(Protocol):
    async def migrate(self) -> None: ...

    async def close(self) -> None: ...

    async def create_task(
        self,
        *,
        name: str,
        url: str,
        description: str | None = None,
        config: dict[str, Any] | None = None,
        scheduled_for: datetime | None = None,
        user_id: str | None = None,
    ) -> TaskRecord: ...

    async def get_task(self, task_id: str) -> TaskRecord | None: ...

    async def list_tasks(self, user_id: str | None = None) -> list[TaskRecord]: ...

    async def update_task(self, task_id: str, fields: dict[str, Any]) -> TaskRecord | None: ...

    async def delete_task(self, task_id: str) -> bool: ...

    async def claim_task(self, task_id: str) -> TaskRecord | None: ...

    async def mark_task_failed(self, task_id: str, error: str) -> TaskRecord | None: ...

    async def get_pending_tasks(self, now: datetime | None = None) -> list[TaskRecord]: ...

    async def record_outcome(
        self,
        task_id: str,
        *,
        status: ResultStatus,
        raw_data: dict[str, Any] | None,
        normalized_data: Any,
        processing_time: int,
        error: str | None,
    ) -> TaskResultRecord: ...

    async def get_latest_result(self, task_id: str) -> TaskResultRecord | None: ...

    async def append_log(
        self,
        task_id: str,
        level: LogLevel,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> TaskLogRecord: ...

    async def get_logs(self, task_id: str) -> list[TaskLogRecord]: ...

    async def save_session(self, domain: str, snapshot: SessionSnapshot) -> None: ...

    async def load_session(self, domain: str) -> SessionSnapshot | None: ...

    async def create_user(
        self, *, email: str, name: str | None = None, role: str = "user"
    ) -> UserRecord: ...

    async def create_api_key(
        self, *, user_id: str, name: str, expires_at: datetime | None = None
    ) -> ApiKeyRecord: ...

    async def revoke_api_key(self, key_id: str, user_id: str) -> bool: ...

    async def authenticate_api_key(self, key: str) -> ApiPrincipal | None: ...

    async def create_credential(
        self,
        *,
        user_id: str,
        name: str,
        domain: str,
        username: str | None = None,
        password_encrypted: str | None = None,
        additional_data: dict[str, Any] | None = None,
    ) -> CredentialRecord: ...

    async def get_credentials_for_domain(
        self, domain: str, user_id: str | None = None
    ) -> list[CredentialRecord]: ...

    async def delete_credential(self, credential_id: str, user_id: str) -> bool: ...


def generate_api_key() -> str:
    """Random 32-character alphanumeric key."""
    return secrets.token_hex(16)


def pending_sort_key(task: TaskRecord) -> tuple[int, datetime, datetime]:
    """Unscheduled tasks first, then earliest scheduled_for, then oldest."""
    if task.scheduled_for is None:
        return (0, task.created_at, task.created_at)
    return (1, task.scheduled_for, task.created_at)
