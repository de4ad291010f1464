"""Storage interfaces for design requests and their tasks."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from design_orchestrator.app.models import (
    CreateDesignRequest,
    DesignRequest,
    DesignTask,
    RequestStatus,
)

# Receives the locked current task; returns the replacement or None to leave it untouched.
TaskMutation = Callable[[DesignTask], DesignTask | None]
# Receives the locked request plus a fresh read of its tasks.
RequestMutation = Callable[[DesignRequest, list[DesignTask]], DesignRequest | None]


class DesignStorage(Protocol):
    def migrate(self) -> None: ...

    def create_request(self, data: CreateDesignRequest) -> DesignRequest: ...

    def get_request(self, request_id: str) -> DesignRequest | None: ...

    def list_requests(self, *, status: RequestStatus | None = None) -> list[DesignRequest]: ...

    def update_request(self, request_id: str, changes: dict[str, Any]) -> DesignRequest: ...

    def mutate_request(
        self, request_id: str, mutation: RequestMutation
    ) -> tuple[DesignRequest, bool]: ...

    def create_task(
        self,
        *,
        request_id: str,
        task_type: str,
        title: str,
        description: str,
        priority: str,
    ) -> DesignTask: ...

    def get_task(self, task_id: str) -> DesignTask | None: ...

    def find_task_by_external_id(self, external_task_id: str) -> DesignTask | None: ...

    def list_tasks(self, request_id: str) -> list[DesignTask]: ...

    def update_task(self, task_id: str, changes: dict[str, Any]) -> DesignTask: ...

    def mutate_task(self, task_id: str, mutation: TaskMutation) -> tuple[DesignTask, bool]: ...


def format_request_number(year: int, sequence: int) -> str:
    """Human-readable request number, e.g. DR-2026-0042."""
    return f"DR-{year}-{sequence:04d}"
