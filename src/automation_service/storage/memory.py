"""In-memory storage backend for tests and local experiments."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from automation_service.storage.base import generate_api_key, pending_sort_key
from automation_service.storage.models import (
    UPDATABLE_TASK_FIELDS,
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


class InMemoryTaskStorage:
    """Dict-backed implementation of TaskStorage."""

    def __init__(self) -> None:
        self._tasks: dict[str, TaskRecord] = {}
        self._results: list[TaskResultRecord] = []
        self._logs: list[TaskLogRecord] = []
        self._sessions: dict[str, SessionSnapshot] = {}
        self._users: dict[str, UserRecord] = {}
        self._api_keys: dict[str, ApiKeyRecord] = {}
        self._credentials: dict[str, CredentialRecord] = {}
        # Serializes compare-and-set style updates across coroutines.
        self._lock = asyncio.Lock()

    async def migrate(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def create_task(
        self,
        *,
        name: str,
        url: str,
        description: str | None = None,
        config: dict[str, Any] | None = None,
        scheduled_for: datetime | None = None,
        user_id: str | None = None,
    ) -> TaskRecord:
        now = datetime.now(UTC)
        record = TaskRecord(
            id=str(uuid4()),
            name=name,
            description=description,
            url=url,
            status="pending",
            config=config or {},
            user_id=user_id,
            created_at=now,
            updated_at=now,
            scheduled_for=scheduled_for,
        )
        self._tasks[record.id] = record
        return record.model_copy(deep=True)

    async def get_task(self, task_id: str) -> TaskRecord | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def list_tasks(self, user_id: str | None = None) -> list[TaskRecord]:
        tasks = [
            task.model_copy(deep=True)
            for task in self._tasks.values()
            if user_id is None or task.user_id == user_id
        ]
        return sorted(tasks, key=lambda task: task.created_at, reverse=True)

    async def update_task(self, task_id: str, fields: dict[str, Any]) -> TaskRecord | None:
        async with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                return None
            changes = {key: value for key, value in fields.items() if key in UPDATABLE_TASK_FIELDS}
            changes["updated_at"] = datetime.now(UTC)
            updated = TaskRecord.model_validate({**current.model_dump(), **changes})
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    async def delete_task(self, task_id: str) -> bool:
        async with self._lock:
            if self._tasks.pop(task_id, None) is None:
                return False
            self._results = [item for item in self._results if item.task_id != task_id]
            self._logs = [item for item in self._logs if item.task_id != task_id]
            return True

    async def claim_task(self, task_id: str) -> TaskRecord | None:
        async with self._lock:
            current = self._tasks.get(task_id)
            if current is None or current.status != "pending":
                return None
            claimed = current.model_copy(
                update={"status": "running", "updated_at": datetime.now(UTC)}
            )
            self._tasks[task_id] = claimed
            return claimed.model_copy(deep=True)

    async def mark_task_failed(self, task_id: str, error: str) -> TaskRecord | None:
        async with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                return None
            now = datetime.now(UTC)
            failed = current.model_copy(
                update={"status": "failed", "error": error, "completed_at": now, "updated_at": now}
            )
            self._tasks[task_id] = failed
            return failed.model_copy(deep=True)

    async def get_pending_tasks(self, now: datetime | None = None) -> list[TaskRecord]:
        cutoff = now or datetime.now(UTC)
        due = [
            task.model_copy(deep=True)
            for task in self._tasks.values()
            if task.status == "pending"
            and (task.scheduled_for is None or task.scheduled_for <= cutoff)
        ]
        return sorted(due, key=pending_sort_key)

    async def record_outcome(
        self,
        task_id: str,
        *,
        status: ResultStatus,
        raw_data: dict[str, Any] | None,
        normalized_data: Any,
        processing_time: int,
        error: str | None,
    ) -> TaskResultRecord:
        async with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise KeyError(f"Task {task_id} does not exist")
            now = datetime.now(UTC)
            result = TaskResultRecord(
                id=str(uuid4()),
                task_id=task_id,
                raw_data=raw_data,
                normalized_data=normalized_data,
                processing_time=processing_time,
                status=status,
                error=error,
                created_at=now,
            )
            self._results.append(result)
            self._tasks[task_id] = current.model_copy(
                update={"status": status, "error": error, "completed_at": now, "updated_at": now}
            )
            return result.model_copy(deep=True)

    async def get_latest_result(self, task_id: str) -> TaskResultRecord | None:
        for item in reversed(self._results):
            if item.task_id == task_id:
                return item.model_copy(deep=True)
        return None

    async def append_log(
        self,
        task_id: str,
        level: LogLevel,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> TaskLogRecord:
        if task_id not in self._tasks:
            raise KeyError(f"Task {task_id} does not exist")
        entry = TaskLogRecord(
            id=str(uuid4()),
            task_id=task_id,
            level=level,
            message=message,
            metadata=metadata or {},
            created_at=datetime.now(UTC),
        )
        self._logs.append(entry)
        return entry

    async def get_logs(self, task_id: str) -> list[TaskLogRecord]:
        return [item.model_copy(deep=True) for item in self._logs if item.task_id == task_id]

    async def save_session(self, domain: str, snapshot: SessionSnapshot) -> None:
        self._sessions[domain] = snapshot.model_copy(deep=True)

    async def load_session(self, domain: str) -> SessionSnapshot | None:
        snapshot = self._sessions.get(domain)
        return snapshot.model_copy(deep=True) if snapshot else None

    async def create_user(
        self, *, email: str, name: str | None = None, role: str = "user"
    ) -> UserRecord:
        user = UserRecord(
            id=str(uuid4()), email=email, name=name, role=role, created_at=datetime.now(UTC)
        )
        self._users[user.id] = user
        return user

    async def create_api_key(
        self, *, user_id: str, name: str, expires_at: datetime | None = None
    ) -> ApiKeyRecord:
        if user_id not in self._users:
            raise KeyError(f"User {user_id} does not exist")
        record = ApiKeyRecord(
            id=str(uuid4()),
            user_id=user_id,
            key=generate_api_key(),
            name=name,
            created_at=datetime.now(UTC),
            expires_at=expires_at,
        )
        self._api_keys[record.id] = record
        return record

    async def revoke_api_key(self, key_id: str, user_id: str) -> bool:
        record = self._api_keys.get(key_id)
        if record is None or record.user_id != user_id:
            return False
        self._api_keys[key_id] = record.model_copy(update={"is_active": False})
        return True

    async def authenticate_api_key(self, key: str) -> ApiPrincipal | None:
        now = datetime.now(UTC)
        for record in self._api_keys.values():
            if record.key != key or not record.is_active:
                continue
            if record.expires_at is not None and record.expires_at <= now:
                return None
            user = self._users.get(record.user_id)
            if user is None:
                return None
            self._api_keys[record.id] = record.model_copy(update={"last_used": now})
            return ApiPrincipal(
                user_id=user.id, email=user.email, role=user.role, api_key_id=record.id
            )
        return None

    async def create_credential(
        self,
        *,
        user_id: str,
        name: str,
        domain: str,
        username: str | None = None,
        password_encrypted: str | None = None,
        additional_data: dict[str, Any] | None = None,
    ) -> CredentialRecord:
        if user_id not in self._users:
            raise KeyError(f"User {user_id} does not exist")
        now = datetime.now(UTC)
        record = CredentialRecord(
            id=str(uuid4()),
            user_id=user_id,
            name=name,
            domain=domain,
            username=username,
            password_encrypted=password_encrypted,
            additional_data=additional_data or {},
            created_at=now,
            updated_at=now,
        )
        self._credentials[record.id] = record
        return record.model_copy(deep=True)

    async def get_credentials_for_domain(
        self, domain: str, user_id: str | None = None
    ) -> list[CredentialRecord]:
        matches = [
            record.model_copy(deep=True)
            for record in self._credentials.values()
            if record.domain == domain and (user_id is None or record.user_id == user_id)
        ]
        return sorted(matches, key=lambda record: record.created_at, reverse=True)

    async def delete_credential(self, credential_id: str, user_id: str) -> bool:
        record = self._credentials.get(credential_id)
        if record is None or record.user_id != user_id:
            return False
        del self._credentials[credential_id]
        return True
