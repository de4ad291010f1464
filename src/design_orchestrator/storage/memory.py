"""In-memory storage backend for tests and local runs."""

from __future__ import annotations

import threading
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from design_orchestrator.app.errors import NotFoundError
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


class InMemoryDesignStorage:
    """Dict-backed implementation with per-record locks for read-modify-write."""

    def __init__(self) -> None:
        self._requests: dict[str, DesignRequest] = {}
        self._tasks: dict[str, DesignTask] = {}
        self._lock = threading.Lock()
        self._record_locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        # Counts persisted writes; tests use it to assert that rejected calls wrote nothing.
        self.write_count = 0

    def migrate(self) -> None:
        return None

    def _record_lock(self, key: str) -> threading.Lock:
        with self._lock:
            return self._record_locks[key]

    def create_request(self, data: CreateDesignRequest) -> DesignRequest:
        now = datetime.now(UTC)
        with self._lock:
            record = DesignRequest(
                request_id=str(uuid4()),
                request_number=format_request_number(now.year, len(self._requests) + 1),
                status="Draft",
                created_at=now,
                updated_at=now,
                **data.model_dump(),
            )
            self._requests[record.request_id] = record
            self.write_count += 1
        return record.model_copy(deep=True)

    def get_request(self, request_id: str) -> DesignRequest | None:
        with self._lock:
            record = self._requests.get(request_id)
        return record.model_copy(deep=True) if record else None

    def list_requests(self, *, status: RequestStatus | None = None) -> list[DesignRequest]:
        with self._lock:
            records = [
                record.model_copy(deep=True)
                for record in self._requests.values()
                if status is None or record.status == status
            ]
        return sorted(records, key=lambda record: record.created_at, reverse=True)

    def update_request(self, request_id: str, changes: dict[str, Any]) -> DesignRequest:
        updated, _ = self.mutate_request(
            request_id,
            lambda current, _tasks: current.model_copy(update=changes),
        )
        return updated

    def mutate_request(
        self, request_id: str, mutation: RequestMutation
    ) -> tuple[DesignRequest, bool]:
        with self._record_lock(f"request:{request_id}"):
            current = self.get_request(request_id)
            if current is None:
                raise NotFoundError(f"Design request {request_id} does not exist")
            replacement = mutation(current, self.list_tasks(request_id))
            if replacement is None:
                return current, False
            replacement = replacement.model_copy(update={"updated_at": datetime.now(UTC)})
            with self._lock:
                self._requests[request_id] = replacement
                self.write_count += 1
        return replacement.model_copy(deep=True), True

    def create_task(
        self,
        *,
        request_id: str,
        task_type: str,
        title: str,
        description: str,
        priority: str,
    ) -> DesignTask:
        now = datetime.now(UTC)
        with self._lock:
            if request_id not in self._requests:
                raise NotFoundError(f"Design request {request_id} does not exist")
            record = DesignTask(
                task_id=str(uuid4()),
                request_id=request_id,
                task_type=task_type,
                title=title,
                description=description,
                priority=priority,
                status="Pending",
                created_at=now,
                updated_at=now,
            )
            self._tasks[record.task_id] = record
            self.write_count += 1
        return record.model_copy(deep=True)

    def get_task(self, task_id: str) -> DesignTask | None:
        with self._lock:
            record = self._tasks.get(task_id)
        return record.model_copy(deep=True) if record else None

    def find_task_by_external_id(self, external_task_id: str) -> DesignTask | None:
        with self._lock:
            for record in self._tasks.values():
                if record.external_task_id == external_task_id:
                    return record.model_copy(deep=True)
        return None

    def list_tasks(self, request_id: str) -> list[DesignTask]:
        with self._lock:
            records = [
                record.model_copy(deep=True)
                for record in self._tasks.values()
                if record.request_id == request_id
            ]
        return sorted(records, key=lambda record: record.created_at)

    def update_task(self, task_id: str, changes: dict[str, Any]) -> DesignTask:
        updated, _ = self.mutate_task(task_id, lambda current: current.model_copy(update=changes))
        return updated

    def mutate_task(self, task_id: str, mutation: TaskMutation) -> tuple[DesignTask, bool]:
        with self._record_lock(f"task:{task_id}"):
            current = self.get_task(task_id)
            if current is None:
                raise NotFoundError(f"Design task {task_id} does not exist")
            replacement = mutation(current)
            if replacement is None:
                return current, False
            replacement = replacement.model_copy(update={"updated_at": datetime.now(UTC)})
            with self._lock:
                self._tasks[task_id] = replacement
                self.write_count += 1
        return replacement.model_copy(deep=True), True
