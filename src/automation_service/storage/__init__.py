"""Storage backends and models."""

from automation_service.storage.base import TaskStorage
from automation_service.storage.memory import InMemoryTaskStorage
from automation_service.storage.models import (
    CredentialRecord,
    SessionSnapshot,
    TaskLogRecord,
    TaskRecord,
    TaskResultRecord,
)
from automation_service.storage.postgres import PostgresTaskStorage

__all__ = [
    "CredentialRecord",
    "InMemoryTaskStorage",
    "PostgresTaskStorage",
    "SessionSnapshot",
    "TaskLogRecord",
    "TaskRecord",
    "TaskResultRecord",
    "TaskStorage",
]
