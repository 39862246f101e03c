"""PostgreSQL-backed storage with automatic table migration."""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from typing import Any

from automation_service.storage.base import generate_api_key
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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY,
        email VARCHAR(255) UNIQUE NOT NULL,
        name VARCHAR(255),
        role VARCHAR(50) NOT NULL DEFAULT 'user',
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS api_keys (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        key VARCHAR(255) UNIQUE NOT NULL,
        name VARCHAR(255) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        expires_at TIMESTAMPTZ,
        last_used TIMESTAMPTZ,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id UUID PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        description TEXT,
        url TEXT NOT NULL,
        status VARCHAR(50) NOT NULL DEFAULT 'pending',
        config JSONB NOT NULL DEFAULT '{}'::jsonb,
        user_id UUID,
        error TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        scheduled_for TIMESTAMPTZ,
        completed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_results (
        id UUID PRIMARY KEY,
        task_id UUID NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        raw_data JSONB,
        normalized_data JSONB,
        processing_time INTEGER NOT NULL CHECK (processing_time >= 0),
        status VARCHAR(50) NOT NULL,
        error TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_logs (
        id UUID PRIMARY KEY,
        task_id UUID NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        level VARCHAR(20) NOT NULL,
        message TEXT NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_data (
        id UUID PRIMARY KEY,
        domain VARCHAR(255) UNIQUE NOT NULL,
        data JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credentials (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        name VARCHAR(255) NOT NULL,
        domain VARCHAR(255) NOT NULL,
        username VARCHAR(255),
        password_encrypted TEXT,
        additional_data JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_user_id ON tasks(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_task_results_task_id ON task_results(task_id)",
    "CREATE INDEX IF NOT EXISTS idx_task_logs_task_id ON task_logs(task_id)",
    "CREATE INDEX IF NOT EXISTS idx_credentials_user_id ON credentials(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_credentials_domain ON credentials(domain)",
)


class PostgresTaskStorage:
    """Persist tasks, results, logs, sessions, credentials and API keys in PostgreSQL."""

    def __init__(self, database_url: str, *, min_size: int = 1, max_size: int = 10) -> None:
        if not database_url:
            raise ValueError("AUTOMATION_DATABASE_URL is required")
        self.database_url = database_url
        pool_cls, self._dict_row, self._json_wrapper = self._load_psycopg()
        self._pool = pool_cls(
            conninfo=database_url,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": self._dict_row},
            open=False,
        )
        self._opened = False

    async def migrate(self) -> None:
        """Open the pool and create tables and indexes if they do not exist."""
        await self._ensure_open()
        async with self._pool.connection() as conn:
            for statement in _SCHEMA_STATEMENTS:
                await conn.execute(statement)

    async def close(self) -> None:
        if self._opened:
            await self._pool.close()
            self._opened = False

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
        now = datetime.now(tz=UTC)
        row = await self._fetchone(
            """
            INSERT INTO tasks (
                id, name, description, url, status, config,
                user_id, created_at, updated_at, scheduled_for
            )
            VALUES (%s, %s, %s, %s, 'pending', %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                uuid.uuid4(),
                name,
                description,
                url,
                self._json_wrapper(config or {}),
                user_id,
                now,
                now,
                scheduled_for,
            ),
        )
        if row is None:
            raise RuntimeError("Failed to load created task")
        return self._row_to_task(row)

    async def get_task(self, task_id: str) -> TaskRecord | None:
        row = await self._fetchone("SELECT * FROM tasks WHERE id::text = %s", (task_id,))
        return self._row_to_task(row) if row else None

    async def list_tasks(self, user_id: str | None = None) -> list[TaskRecord]:
        if user_id is None:
            rows = await self._fetchall("SELECT * FROM tasks ORDER BY created_at DESC", ())
        else:
            rows = await self._fetchall(
                "SELECT * FROM tasks WHERE user_id::text = %s ORDER BY created_at DESC",
                (user_id,),
            )
        return [self._row_to_task(row) for row in rows]

    async def update_task(self, task_id: str, fields: dict[str, Any]) -> TaskRecord | None:
        assignments: list[str] = []
        values: list[Any] = []
        # Iterate the allow-list, never caller keys, so column names are never user input.
        for column in sorted(UPDATABLE_TASK_FIELDS):
            if column not in fields:
                continue
            value = fields[column]
            assignments.append(f"{column} = %s")
            values.append(self._json_wrapper(value or {}) if column == "config" else value)
        assignments.append("updated_at = %s")
        values.append(datetime.now(tz=UTC))
        values.append(task_id)
        row = await self._fetchone(
            f"UPDATE tasks SET {', '.join(assignments)} WHERE id::text = %s RETURNING *",
            tuple(values),
        )
        return self._row_to_task(row) if row else None

    async def delete_task(self, task_id: str) -> bool:
        row = await self._fetchone(
            "DELETE FROM tasks WHERE id::text = %s RETURNING id", (task_id,)
        )
        return row is not None

    async def claim_task(self, task_id: str) -> TaskRecord | None:
        """Flip pending -> running in one statement; None if someone else got there first."""
        row = await self._fetchone(
            """
            UPDATE tasks
            SET status = 'running', updated_at = %s
            WHERE id::text = %s AND status = 'pending'
            RETURNING *
            """,
            (datetime.now(tz=UTC), task_id),
        )
        return self._row_to_task(row) if row else None

    async def mark_task_failed(self, task_id: str, error: str) -> TaskRecord | None:
        now = datetime.now(tz=UTC)
        row = await self._fetchone(
            """
            UPDATE tasks
            SET status = 'failed', error = %s, completed_at = %s, updated_at = %s
            WHERE id::text = %s
            RETURNING *
            """,
            (error, now, now, task_id),
        )
        return self._row_to_task(row) if row else None

    async def get_pending_tasks(self, now: datetime | None = None) -> list[TaskRecord]:
        rows = await self._fetchall(
            """
            SELECT * FROM tasks
            WHERE status = 'pending'
              AND (scheduled_for IS NULL OR scheduled_for <= %s)
            ORDER BY scheduled_for ASC NULLS FIRST, created_at ASC
            """,
            (now or datetime.now(tz=UTC),),
        )
        return [self._row_to_task(row) for row in rows]

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
        """Insert the result row and finalize the task in a single transaction."""
        now = datetime.now(tz=UTC)
        async with self._pool.connection() as conn:
            async with conn.transaction():
                cursor = await conn.execute(
                    """
                    INSERT INTO task_results (
                        id, task_id, raw_data, normalized_data,
                        processing_time, status, error, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        uuid.uuid4(),
                        task_id,
                        self._json_wrapper(raw_data) if raw_data is not None else None,
                        self._json_wrapper(normalized_data) if normalized_data is not None else None,
                        processing_time,
                        status,
                        error,
                        now,
                    ),
                )
                result_row = await cursor.fetchone()
                cursor = await conn.execute(
                    """
                    UPDATE tasks
                    SET status = %s, completed_at = %s, error = %s, updated_at = %s
                    WHERE id::text = %s
                    RETURNING id
                    """,
                    (status, now, error, now, task_id),
                )
                if await cursor.fetchone() is None:
                    raise KeyError(f"Task {task_id} does not exist")
        return self._row_to_result(result_row)

    async def get_latest_result(self, task_id: str) -> TaskResultRecord | None:
        row = await self._fetchone(
            """
            SELECT * FROM task_results
            WHERE task_id::text = %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (task_id,),
        )
        return self._row_to_result(row) if row else None

    async def append_log(
        self,
        task_id: str,
        level: LogLevel,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> TaskLogRecord:
        row = await self._fetchone(
            """
            INSERT INTO task_logs (id, task_id, level, message, metadata)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING *
            """,
            (uuid.uuid4(), task_id, level, message, self._json_wrapper(metadata or {})),
        )
        if row is None:
            raise RuntimeError("Failed to load created log entry")
        return self._row_to_log(row)

    async def get_logs(self, task_id: str) -> list[TaskLogRecord]:
        rows = await self._fetchall(
            "SELECT * FROM task_logs WHERE task_id::text = %s ORDER BY created_at ASC",
            (task_id,),
        )
        return [self._row_to_log(row) for row in rows]

    async def save_session(self, domain: str, snapshot: SessionSnapshot) -> None:
        now = datetime.now(tz=UTC)
        await self._execute(
            """
            INSERT INTO user_data (id, domain, data, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (domain)
            DO UPDATE SET data = EXCLUDED.data, updated_at = EXCLUDED.updated_at
            """,
            (
                uuid.uuid4(),
                domain,
                self._json_wrapper(snapshot.model_dump(mode="json", by_alias=True)),
                now,
                now,
            ),
        )

    async def load_session(self, domain: str) -> SessionSnapshot | None:
        row = await self._fetchone("SELECT data FROM user_data WHERE domain = %s", (domain,))
        if row is None:
            return None
        return SessionSnapshot.model_validate(self._parse_json_object(row["data"]))

    async def create_user(
        self, *, email: str, name: str | None = None, role: str = "user"
    ) -> UserRecord:
        row = await self._fetchone(
            """
            INSERT INTO users (id, email, name, role, created_at)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING *
            """,
            (uuid.uuid4(), email, name, role, datetime.now(tz=UTC)),
        )
        if row is None:
            raise RuntimeError("Failed to load created user")
        return UserRecord(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            role=row["role"],
            created_at=row["created_at"],
        )

    async def create_api_key(
        self, *, user_id: str, name: str, expires_at: datetime | None = None
    ) -> ApiKeyRecord:
        row = await self._fetchone(
            """
            INSERT INTO api_keys (id, user_id, key, name, created_at, expires_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (uuid.uuid4(), user_id, generate_api_key(), name, datetime.now(tz=UTC), expires_at),
        )
        if row is None:
            raise RuntimeError("Failed to load created API key")
        return self._row_to_api_key(row)

    async def revoke_api_key(self, key_id: str, user_id: str) -> bool:
        row = await self._fetchone(
            """
            UPDATE api_keys SET is_active = FALSE
            WHERE id::text = %s AND user_id::text = %s
            RETURNING id
            """,
            (key_id, user_id),
        )
        return row is not None

    async def authenticate_api_key(self, key: str) -> ApiPrincipal | None:
        """Resolve an active, unexpired key and bump its last_used timestamp."""
        row = await self._fetchone(
            """
            UPDATE api_keys AS k
            SET last_used = CURRENT_TIMESTAMP
            FROM users AS u
            WHERE k.user_id = u.id
              AND k.key = %s
              AND k.is_active = TRUE
              AND (k.expires_at IS NULL OR k.expires_at > CURRENT_TIMESTAMP)
            RETURNING k.id AS api_key_id, u.id AS user_id, u.email, u.role
            """,
            (key,),
        )
        if row is None:
            return None
        return ApiPrincipal(
            user_id=str(row["user_id"]),
            email=row["email"],
            role=row["role"],
            api_key_id=str(row["api_key_id"]),
        )

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
        now = datetime.now(tz=UTC)
        row = await self._fetchone(
            """
            INSERT INTO credentials (
                id, user_id, name, domain, username,
                password_encrypted, additional_data, created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                uuid.uuid4(),
                user_id,
                name,
                domain,
                username,
                password_encrypted,
                self._json_wrapper(additional_data or {}),
                now,
                now,
            ),
        )
        if row is None:
            raise RuntimeError("Failed to load created credential")
        return self._row_to_credential(row)

    async def get_credentials_for_domain(
        self, domain: str, user_id: str | None = None
    ) -> list[CredentialRecord]:
        if user_id is None:
            rows = await self._fetchall(
                "SELECT * FROM credentials WHERE domain = %s ORDER BY created_at DESC",
                (domain,),
            )
        else:
            rows = await self._fetchall(
                """
                SELECT * FROM credentials
                WHERE domain = %s AND user_id::text = %s
                ORDER BY created_at DESC
                """,
                (domain, user_id),
            )
        return [self._row_to_credential(row) for row in rows]

    async def delete_credential(self, credential_id: str, user_id: str) -> bool:
        row = await self._fetchone(
            """
            DELETE FROM credentials
            WHERE id::text = %s AND user_id::text = %s
            RETURNING id
            """,
            (credential_id, user_id),
        )
        return row is not None

    async def _ensure_open(self) -> None:
        if not self._opened:
            await self._pool.open()
            self._opened = True

    async def _execute(self, query: str, params: tuple[Any, ...]) -> None:
        await self._ensure_open()
        async with self._pool.connection() as conn:
            await conn.execute(query, params)

    async def _fetchone(self, query: str, params: tuple[Any, ...]) -> Any:
        await self._ensure_open()
        async with self._pool.connection() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchone()

    async def _fetchall(self, query: str, params: tuple[Any, ...]) -> list[Any]:
        await self._ensure_open()
        async with self._pool.connection() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchall()

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            from psycopg.rows import dict_row
            from psycopg.types.json import Jsonb
            from psycopg_pool import AsyncConnectionPool
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary,pool]>=3.2,<4.0"'
            ) from exc
        return AsyncConnectionPool, dict_row, Jsonb

    @staticmethod
    def _parse_json_object(raw: Any) -> dict[str, Any]:
        """Parse JSON-like value into dict; fall back to empty dict."""
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if isinstance(parsed, dict):
            return parsed
        return {}

    @staticmethod
    def _parse_json_value(raw: Any) -> Any:
        if isinstance(raw, str):
            return json.loads(raw)
        return raw

    @classmethod
    def _row_to_task(cls, row: Any) -> TaskRecord:
        return TaskRecord(
            id=str(row["id"]),
            name=row["name"],
            description=row["description"],
            url=row["url"],
            status=row["status"],
            config=cls._parse_json_object(row["config"]),
            user_id=str(row["user_id"]) if row["user_id"] is not None else None,
            error=row["error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            scheduled_for=row["scheduled_for"],
            completed_at=row["completed_at"],
        )

    @classmethod
    def _row_to_result(cls, row: Any) -> TaskResultRecord:
        raw_data = row["raw_data"]
        return TaskResultRecord(
            id=str(row["id"]),
            task_id=str(row["task_id"]),
            raw_data=cls._parse_json_object(raw_data) if raw_data is not None else None,
            normalized_data=cls._parse_json_value(row["normalized_data"]),
            processing_time=row["processing_time"],
            status=row["status"],
            error=row["error"],
            created_at=row["created_at"],
        )

    @classmethod
    def _row_to_log(cls, row: Any) -> TaskLogRecord:
        return TaskLogRecord(
            id=str(row["id"]),
            task_id=str(row["task_id"]),
            level=row["level"],
            message=row["message"],
            metadata=cls._parse_json_object(row["metadata"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_api_key(row: Any) -> ApiKeyRecord:
        return ApiKeyRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            key=row["key"],
            name=row["name"],
            is_active=row["is_active"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_used=row["last_used"],
        )

    @classmethod
    def _row_to_credential(cls, row: Any) -> CredentialRecord:
        return CredentialRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            name=row["name"],
            domain=row["domain"],
            username=row["username"],
            password_encrypted=row["password_encrypted"],
            additional_data=cls._parse_json_object(row["additional_data"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
