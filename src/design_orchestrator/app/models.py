"""Pydantic models shared across API, decomposer, dispatcher, reconciler, and storage.

Terms used in this file:
- Design request: the client-facing record that owns one or more design tasks.
- Design task: one deliverable dispatched to the external design platform.
- Alias: the camelCase key used on the wire (API bodies, dispatch payloads, callbacks).
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Task lifecycle states. Completed and Failed are terminal.
TaskStatus = Literal["Pending", "Queued", "Processing", "Completed", "Failed"]

# Request lifecycle states, derived from the task multiset after submission.
RequestStatus = Literal[
    "Draft",
    "Submitted",
    "AIProcessing",
    "Rendering",
    "Completed",
    "UnderReview",
]

TERMINAL_TASK_STATUSES: frozenset[str] = frozenset({"Completed", "Failed"})


class WireModel(BaseModel):
    """Base model that reads and writes camelCase keys while keeping snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DesignRequest(WireModel):
    """Canonical design request record returned by API/storage."""

    request_id: str
    request_number: str
    status: RequestStatus = "Draft"
    client_name: str
    client_email: str
    client_phone: str | None = None
    project_name: str
    project_type: str
    description: str | None = None
    requirements: str
    site_details: str | None = None
    budget: float | None = None
    timeline: str
    # AI analysis fields, forwarded verbatim to the platform when present.
    design_concept: str | None = None
    style_recommendations: str | None = None
    spatial_layout: str | None = None
    material_suggestions: str | None = None
    sustainability_features: str | None = None
    visualization_prompt: str | None = None
    submitted_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class DesignTask(WireModel):
    """Canonical design task record returned by API/storage."""

    task_id: str
    request_id: str
    task_type: str
    title: str
    description: str
    priority: str = "Normal"
    status: TaskStatus = "Pending"
    external_task_id: str | None = None
    # Raw platform status, stored verbatim even when it does not map internally.
    external_status: str | None = None
    progress: float | None = None
    # Audit snapshots of what was sent, what came back, and the last callback applied.
    dispatch_payload: dict[str, Any] | None = None
    dispatch_response: dict[str, Any] | None = None
    last_callback: dict[str, Any] | None = None
    result_url: str | None = None
    result_files: list[str] = Field(default_factory=list)
    result_data: dict[str, Any] | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_sync_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class DesignRequestDetail(DesignRequest):
    """Design request plus its tasks, used by GET /api/design-requests/{id}."""

    tasks: list[DesignTask] = Field(default_factory=list)


class CreateDesignRequest(WireModel):
    """Request body for POST /api/design-requests."""

    client_name: str = Field(min_length=1)
    client_email: str = Field(min_length=3)
    client_phone: str | None = None
    project_name: str = Field(min_length=1)
    project_type: str = Field(min_length=1)
    description: str | None = None
    requirements: str = Field(min_length=1)
    site_details: str | None = None
    budget: float | None = Field(default=None, ge=0)
    timeline: str = Field(min_length=1)
    design_concept: str | None = None
    style_recommendations: str | None = None
    spatial_layout: str | None = None
    material_suggestions: str | None = None
    sustainability_features: str | None = None
    visualization_prompt: str | None = None


class DeliverableDescriptor(WireModel):
    """One requested deliverable inside a submission."""

    type: str = Field(min_length=1)
    title: str | None = None
    description: str | None = None
    priority: str | None = None


class SubmitDesignRequest(WireModel):
    """Request body for POST /api/design-requests/{id}/submit."""

    task_types: list[DeliverableDescriptor] = Field(min_length=1)

    @field_validator("task_types", mode="before")
    @classmethod
    def _accept_bare_type_names(cls, value: Any) -> Any:
        # Older clients send ["Rendering", "Structural"] instead of descriptor objects.
        if isinstance(value, list):
            return [{"type": item} if isinstance(item, str) else item for item in value]
        return value


class DispatchPayload(WireModel):
    """Body POSTed to the external design platform for one task."""

    action: str = "create_design_task"
    request_id: str
    request_number: str
    task_id: str
    task_type: str
    title: str
    description: str
    priority: str
    project_name: str
    project_type: str
    requirements: str
    site_details: str = ""
    budget: float | None = None
    timeline: str
    client_name: str
    client_email: str
    client_phone: str | None = None
    design_concept: str | None = None
    style_recommendations: str | None = None
    spatial_layout: str | None = None
    material_suggestions: str | None = None
    sustainability_features: str | None = None
    visualization_prompt: str | None = None
    callback_url: str
    callback_secret: str

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class DispatchResponse(WireModel):
    """Normalized outcome of one dispatch call."""

    success: bool
    external_task_id: str | None = None
    status: str | None = None
    message: str | None = None
    estimated_completion_time: str | None = None
    error: str | None = None


class TaskOutcome(WireModel):
    """Per-descriptor entry in a submission result."""

    task_id: str | None = None
    task_type: str
    status: Literal["success", "failed"]
    external_task_id: str | None = None
    message: str | None = None
    error: str | None = None


class SubmissionResult(WireModel):
    """Response body for POST /api/design-requests/{id}/submit."""

    success: bool
    tasks_created: int
    tasks_failed: int
    request_status: RequestStatus
    results: list[TaskOutcome] = Field(default_factory=list)
    errors: list[TaskOutcome] = Field(default_factory=list)


class CallbackPayload(BaseModel):
    """Strictly parsed inbound callback from the external design platform.

    Keys arrive in camelCase; a few legacy spellings are accepted as aliases
    (``data`` for ``resultData``, ``error`` for ``errorMessage``).
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    external_task_id: str | None = Field(default=None, alias="externalTaskId")
    task_id: str | None = Field(default=None, alias="taskId")
    request_id: str | None = Field(default=None, alias="requestId")
    status: str = Field(min_length=1)
    progress: float | None = None
    result_url: str | None = Field(default=None, alias="resultUrl")
    result_files: list[str] = Field(default_factory=list, alias="resultFiles")
    result_data: dict[str, Any] | None = Field(default=None, alias="resultData")
    error_message: str | None = Field(default=None, alias="errorMessage")
    started_at: datetime | None = Field(default=None, alias="startedAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")

    @field_validator("status")
    @classmethod
    def _strip_status(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("status must not be blank")
        return stripped

    @field_validator("progress", mode="before")
    @classmethod
    def _lenient_progress(cls, value: Any) -> float | None:
        # Progress is informational; an odd value must not reject the status update.
        if isinstance(value, bool):
            return None
        try:
            progress = float(value)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(progress):
            return None
        return min(100.0, max(0.0, progress))

    @field_validator("result_files", mode="before")
    @classmethod
    def _null_files_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    def snapshot(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CallbackAck(WireModel):
    """Response body for POST /api/webhooks/design-callback."""

    success: bool = True
    task_id: str
    status: TaskStatus
