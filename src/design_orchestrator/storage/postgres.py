"""PostgreSQL-backed storage with automatic table migration.

Read-modify-write helpers (`mutate_request`, `mutate_task`) run inside one
transaction that holds the row lock (`SELECT ... FOR UPDATE`) until commit, so
concurrent callbacks for tasks of the same request cannot lose each other's
aggregate update.
"""

from __future__ import annotations

import json
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from design_orchestrator.app.errors import NotFoundError, PersistenceError
from design_orchestrator.app.models import (
    CreateDesignRequest,
    DesignRequest,
    DesignTask,
    RequestStatus,
)
from design_orchestrator.storage.base import (
    RequestMutation,
    TaskMutation,
    format_request_number,
)

# Descriptive request metadata lives in one JSONB column; the core never queries it.
_REQUEST_DETAIL_FIELDS: tuple[str, ...] = tuple(CreateDesignRequest.model_fields)

_TASK_JSON_COLUMNS: dict[str, str] = {
    "dispatch_payload": "dispatch_payload_json",
    "dispatch_response": "dispatch_response_json",
    "last_callback": "last_callback_json",
    "result_files": "result_files_json",
    "result_data": "result_data_json",
}

_TASK_SCALAR_COLUMNS: tuple[str, ...] = (
    "task_type",
    "title",
    "description",
    "priority",
    "status",
    "external_task_id",
    "external_status",
    "progress",
    "result_url",
    "error_message",
    "started_at",
    "completed_at",
    "last_sync_at",
)


class PostgresDesignStorage:
    """Persist design requests and tasks in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("DESIGN_ORCHESTRATOR_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS design_requests (
                    request_id UUID PRIMARY KEY,
                    request_number TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL,
                    details_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    submitted_at TIMESTAMPTZ,
                    completed_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_design_requests_status
                ON design_requests(status)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_design_requests_created_at
                ON design_requests(created_at DESC)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS design_tasks (
                    task_id UUID PRIMARY KEY,
                    request_id UUID NOT NULL
                        REFERENCES design_requests(request_id) ON DELETE CASCADE,
                    task_type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    status TEXT NOT NULL,
                    external_task_id TEXT,
                    external_status TEXT,
                    progress DOUBLE PRECISION,
                    dispatch_payload_json JSONB,
                    dispatch_response_json JSONB,
                    last_callback_json JSONB,
                    result_url TEXT,
                    result_files_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    result_data_json JSONB,
                    error_message TEXT,
                    started_at TIMESTAMPTZ,
                    completed_at TIMESTAMPTZ,
                    last_sync_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            # Tables created before fractional progress was accepted stored INTEGER.
            conn.execute(
                "ALTER TABLE design_tasks ALTER COLUMN progress TYPE DOUBLE PRECISION"
            )
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_design_tasks_request_id
                ON design_tasks(request_id)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_design_tasks_external_task_id
                ON design_tasks(external_task_id)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_design_tasks_status
                ON design_tasks(status)
                """)

    def create_request(self, data: CreateDesignRequest) -> DesignRequest:
        request_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        with self._session() as conn:
            # Serialize numbering so two creates cannot pick the same sequence value.
            conn.execute("LOCK TABLE design_requests IN SHARE ROW EXCLUSIVE MODE")
            row = conn.execute("SELECT COUNT(*) AS total FROM design_requests").fetchone()
            sequence = int(row["total"]) + 1 if row else 1
            inserted = conn.execute(
                """
                INSERT INTO design_requests (
                    request_id,
                    request_number,
                    status,
                    details_json,
                    submitted_at,
                    completed_at,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    request_id,
                    format_request_number(now.year, sequence),
                    "Draft",
                    self._json_wrapper(data.model_dump(mode="json")),
                    None,
                    None,
                    now,
                    now,
                ),
            ).fetchone()
        return self._row_to_request(inserted)

    def get_request(self, request_id: str) -> DesignRequest | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM design_requests WHERE request_id::text = %s",
                (request_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_request(row)

    def list_requests(self, *, status: RequestStatus | None = None) -> list[DesignRequest]:
        with self._session() as conn:
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM design_requests ORDER BY created_at DESC"
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM design_requests
                    WHERE status = %s
                    ORDER BY created_at DESC
                    """,
                    (status,),
                ).fetchall()
        return [self._row_to_request(row) for row in rows]

    def update_request(self, request_id: str, changes: dict[str, Any]) -> DesignRequest:
        updated, _ = self.mutate_request(
            request_id,
            lambda current, _tasks: current.model_copy(update=changes),
        )
        return updated

    def mutate_request(
        self, request_id: str, mutation: RequestMutation
    ) -> tuple[DesignRequest, bool]:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM design_requests WHERE request_id::text = %s FOR UPDATE",
                (request_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Design request {request_id} does not exist")
            current = self._row_to_request(row)
            # Task rows are read after the lock is held so the view includes every
            # task update committed before this transaction acquired it.
            tasks = [
                self._row_to_task(task_row)
                for task_row in conn.execute(
                    """
                    SELECT * FROM design_tasks
                    WHERE request_id::text = %s
                    ORDER BY created_at
                    """,
                    (request_id,),
                ).fetchall()
            ]
            replacement = mutation(current, tasks)
            if replacement is None:
                return current, False
            updated_row = conn.execute(
                """
                UPDATE design_requests
                SET status = %s,
                    details_json = %s,
                    submitted_at = %s,
                    completed_at = %s,
                    updated_at = %s
                WHERE request_id::text = %s
                RETURNING *
                """,
                (
                    replacement.status,
                    self._json_wrapper(self._request_details(replacement)),
                    replacement.submitted_at,
                    replacement.completed_at,
                    datetime.now(tz=UTC),
                    request_id,
                ),
            ).fetchone()
        return self._row_to_request(updated_row), True

    def create_task(
        self,
        *,
        request_id: str,
        task_type: str,
        title: str,
        description: str,
        priority: str,
    ) -> DesignTask:
        task_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        with self._session() as conn:
            exists = conn.execute(
                "SELECT 1 FROM design_requests WHERE request_id::text = %s",
                (request_id,),
            ).fetchone()
            if exists is None:
                raise NotFoundError(f"Design request {request_id} does not exist")
            row = conn.execute(
                """
                INSERT INTO design_tasks (
                    task_id,
                    request_id,
                    task_type,
                    title,
                    description,
                    priority,
                    status,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (task_id, request_id, task_type, title, description, priority, "Pending", now, now),
            ).fetchone()
        return self._row_to_task(row)

    def get_task(self, task_id: str) -> DesignTask | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM design_tasks WHERE task_id::text = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def find_task_by_external_id(self, external_task_id: str) -> DesignTask | None:
        with self._session() as conn:
            row = conn.execute(
                """
                SELECT * FROM design_tasks
                WHERE external_task_id = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (external_task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def list_tasks(self, request_id: str) -> list[DesignTask]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT * FROM design_tasks
                WHERE request_id::text = %s
                ORDER BY created_at
                """,
                (request_id,),
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def update_task(self, task_id: str, changes: dict[str, Any]) -> DesignTask:
        updated, _ = self.mutate_task(task_id, lambda current: current.model_copy(update=changes))
        return updated

    def mutate_task(self, task_id: str, mutation: TaskMutation) -> tuple[DesignTask, bool]:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM design_tasks WHERE task_id::text = %s FOR UPDATE",
                (task_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Design task {task_id} does not exist")
            current = self._row_to_task(row)
            replacement = mutation(current)
            if replacement is None:
                return current, False

            assignments = [f"{column} = %s" for column in _TASK_SCALAR_COLUMNS]
            values: list[Any] = [getattr(replacement, column) for column in _TASK_SCALAR_COLUMNS]
            for field_name, column in _TASK_JSON_COLUMNS.items():
                assignments.append(f"{column} = %s")
                value = getattr(replacement, field_name)
                values.append(self._json_wrapper(value) if value is not None else None)
            assignments.append("updated_at = %s")
            values.extend([datetime.now(tz=UTC), task_id])
            updated_row = conn.execute(
                f"""
                UPDATE design_tasks
                SET {", ".join(assignments)}
                WHERE task_id::text = %s
                RETURNING *
                """,  # noqa: S608 - column names come from module constants
                tuple(values),
            ).fetchone()
        return self._row_to_task(updated_row), True

    @contextmanager
    def _session(self) -> Iterator[Any]:
        """Open one connection (one transaction); driver errors become PersistenceError."""
        with self._lock:
            try:
                # Leaving the connection block commits, or rolls back on exception.
                with self._connect() as conn:
                    yield conn
            except self._psycopg.Error as exc:
                raise PersistenceError(f"Design storage operation failed: {exc}") from exc

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _request_details(record: DesignRequest) -> dict[str, Any]:
        return record.model_dump(mode="json", include=set(_REQUEST_DETAIL_FIELDS))

    @staticmethod
    def _parse_json(raw: Any) -> Any:
        if isinstance(raw, str):
            return json.loads(raw)
        return raw

    @staticmethod
    def _parse_datetime_optional(raw: Any) -> datetime | None:
        if raw is None:
            return None
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_request(cls, row: Any) -> DesignRequest:
        details = cls._parse_json(row["details_json"]) or {}
        return DesignRequest(
            request_id=str(row["request_id"]),
            request_number=row["request_number"],
            status=row["status"],
            submitted_at=cls._parse_datetime_optional(row["submitted_at"]),
            completed_at=cls._parse_datetime_optional(row["completed_at"]),
            created_at=cls._parse_datetime_optional(row["created_at"]),
            updated_at=cls._parse_datetime_optional(row["updated_at"]),
            **{key: value for key, value in details.items() if key in _REQUEST_DETAIL_FIELDS},
        )

    @classmethod
    def _row_to_task(cls, row: Any) -> DesignTask:
        return DesignTask(
            task_id=str(row["task_id"]),
            request_id=str(row["request_id"]),
            task_type=row["task_type"],
            title=row["title"],
            description=row["description"],
            priority=row["priority"],
            status=row["status"],
            external_task_id=row["external_task_id"],
            external_status=row["external_status"],
            progress=row["progress"],
            dispatch_payload=cls._parse_json(row["dispatch_payload_json"]),
            dispatch_response=cls._parse_json(row["dispatch_response_json"]),
            last_callback=cls._parse_json(row["last_callback_json"]),
            result_url=row["result_url"],
            result_files=cls._parse_json(row["result_files_json"]) or [],
            result_data=cls._parse_json(row["result_data_json"]),
            error_message=row["error_message"],
            started_at=cls._parse_datetime_optional(row["started_at"]),
            completed_at=cls._parse_datetime_optional(row["completed_at"]),
            last_sync_at=cls._parse_datetime_optional(row["last_sync_at"]),
            created_at=cls._parse_datetime_optional(row["created_at"]),
            updated_at=cls._parse_datetime_optional(row["updated_at"]),
        )
