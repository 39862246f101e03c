"""Storage models shared by API and persistence backends."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# Task lifecycle: pending -> running -> completed | failed.
TaskStatus = Literal["pending", "running", "completed", "failed"]
ResultStatus = Literal["completed", "failed"]
LogLevel = Literal["debug", "info", "warning", "error"]

# Fields callers may change through update_task; everything else is ignored.
UPDATABLE_TASK_FIELDS = frozenset(
    {"name", "description", "url", "status", "config", "scheduled_for"}
)


class TaskRecord(BaseModel):
    """Persisted automation task."""

    id: str
    name: str
    description: str | None = None
    url: str
    status: TaskStatus = "pending"
    config: dict[str, Any] = Field(default_factory=dict)
    user_id: str | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime
    scheduled_for: datetime | None = None
    completed_at: datetime | None = None


class TaskResultRecord(BaseModel):
    """Outcome of one execution; never modified after insert."""

    id: str
    task_id: str
    raw_data: dict[str, Any] | None = None
    normalized_data: Any = None
    # Milliseconds.
    processing_time: int = Field(ge=0)
    status: ResultStatus
    error: str | None = None
    created_at: datetime


class TaskLogRecord(BaseModel):
    """One append-only task log entry."""

    id: str
    task_id: str
    level: LogLevel
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class SessionSnapshot(BaseModel):
    """Browser state persisted per domain: cookie set plus local storage."""

    model_config = ConfigDict(populate_by_name=True)

    cookies: list[dict[str, Any]] = Field(default_factory=list)
    local_storage: dict[str, str] = Field(default_factory=dict, alias="localStorage")


class UserRecord(BaseModel):
    id: str
    email: str
    name: str | None = None
    role: str = "user"
    created_at: datetime


class ApiKeyRecord(BaseModel):
    id: str
    user_id: str
    key: str
    name: str
    is_active: bool = True
    created_at: datetime
    expires_at: datetime | None = None
    last_used: datetime | None = None


class ApiPrincipal(BaseModel):
    """Identity resolved from a valid API key."""

    user_id: str
    email: str
    role: str
    api_key_id: str


class CredentialRecord(BaseModel):
    """Saved website login; the password is stored as an opaque encrypted value."""

    id: str
    user_id: str
    name: str
    domain: str
    username: str | None = None
    password_encrypted: str | None = Field(default=None, repr=False)
    additional_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
