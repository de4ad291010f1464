"""Apply inbound design platform callbacks to tasks and their owning request.

Callbacks are delivered at least once and in no particular order, so every step
here is written to converge:
- the task merge is additive (missing fields never clear stored ones),
- task status only moves forward and terminal tasks are left untouched,
- a merge that changes nothing performs no write,
- the request recompute writes (and notifies listeners) only on a real change.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .aggregator import active_tasks, aggregate_request_status, is_forward_transition
from .callback_auth import require_secret, secret_matches
from .errors import AuthenticationError, NotFoundError, ValidationError
from .models import (
    CallbackAck,
    CallbackPayload,
    DesignRequest,
    DesignTask,
    RequestStatus,
    TaskStatus,
)

logger = logging.getLogger(__name__)

# External vocabulary -> internal task status. Lookup is case-insensitive.
EXTERNAL_STATUS_MAP: dict[str, TaskStatus] = {
    "pending": "Pending",
    "queued": "Queued",
    "processing": "Processing",
    "in_progress": "Processing",
    "running": "Processing",
    "rendering": "Processing",
    "completed": "Completed",
    "success": "Completed",
    "succeeded": "Completed",
    "done": "Completed",
    "failed": "Failed",
    "error": "Failed",
    "cancelled": "Failed",
    "canceled": "Failed",
}

RequestStatusListener = Callable[[DesignRequest, RequestStatus], None]


def map_external_status(external_status: str) -> TaskStatus | None:
    """Map platform vocabulary to a task status; None means pass-through."""
    return EXTERNAL_STATUS_MAP.get(external_status.strip().lower())


def parse_callback(body: Any) -> CallbackPayload:
    """Parse a raw callback body, raising ValidationError on structural problems."""
    if not isinstance(body, dict):
        raise ValidationError("Invalid callback payload: expected a JSON object")
    normalized = dict(body)
    # Legacy spellings used by earlier platform releases.
    if "resultData" not in normalized and isinstance(normalized.get("data"), dict):
        normalized["resultData"] = normalized["data"]
    if "errorMessage" not in normalized and isinstance(normalized.get("error"), str):
        normalized["errorMessage"] = normalized["error"]
    try:
        callback = CallbackPayload.model_validate(normalized)
    except PydanticValidationError as exc:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})
        raise ValidationError(f"Invalid callback payload: {', '.join(fields)}") from exc
    if not callback.task_id and not callback.external_task_id:
        raise ValidationError("Invalid callback payload: taskId or externalTaskId is required")
    return callback


def merge_callback(
    current: DesignTask, callback: CallbackPayload, *, now: datetime
) -> DesignTask | None:
    """Return the task with the callback merged in, or None when nothing changes."""
    if current.is_terminal:
        return None

    changes: dict[str, Any] = {
        "external_status": callback.status,
        "last_callback": callback.snapshot(),
    }
    target = map_external_status(callback.status)
    if target is not None and is_forward_transition(current.status, target):
        changes["status"] = target
    next_status = changes.get("status", current.status)

    if callback.external_task_id and not current.external_task_id:
        changes["external_task_id"] = callback.external_task_id
    if callback.progress is not None:
        changes["progress"] = callback.progress
    if callback.result_url:
        changes["result_url"] = callback.result_url
    if callback.result_files:
        changes["result_files"] = list(callback.result_files)
    if callback.result_data:
        changes["result_data"] = callback.result_data
    if callback.error_message:
        changes["error_message"] = callback.error_message
    if callback.started_at and current.started_at is None:
        changes["started_at"] = callback.started_at
    if next_status == "Completed" and current.completed_at is None:
        changes["completed_at"] = callback.completed_at or now

    effective = {
        key: value for key, value in changes.items() if getattr(current, key) != value
    }
    if not effective:
        return None
    effective["last_sync_at"] = now
    return current.model_copy(update=effective)


class CallbackReconciler:
    def __init__(
        self,
        *,
        storage,
        webhook_secret: str,
        listeners: Sequence[RequestStatusListener] = (),
    ) -> None:
        self.storage = storage
        self.webhook_secret = webhook_secret
        self.listeners = list(listeners)

    def handle(self, body: Any) -> CallbackAck:
        """Authenticate, parse, locate, merge, and recompute for one callback body."""
        if not isinstance(body, dict):
            raise ValidationError("Invalid callback payload: expected a JSON object")
        callback, task = self._authenticate(body)
        logger.info(
            "design_callback event=received task_id=%s external_task_id=%s status=%s",
            task.task_id,
            callback.external_task_id,
            callback.status,
        )

        unmapped = map_external_status(callback.status) is None
        if unmapped:
            logger.warning(
                "design_callback event=unmapped_status task_id=%s external_status=%s",
                task.task_id,
                callback.status,
            )
        now = datetime.now(UTC)
        updated, changed = self.storage.mutate_task(
            task.task_id,
            lambda current: merge_callback(current, callback, now=now),
        )
        logger.info(
            "design_callback event=applied task_id=%s status=%s external_status=%s "
            "changed=%s unmapped=%s",
            updated.task_id,
            updated.status,
            callback.status,
            changed,
            unmapped,
        )

        self.recompute_request(updated.request_id)
        return CallbackAck(task_id=updated.task_id, status=updated.status)

    def recompute_request(self, request_id: str) -> DesignRequest:
        """Re-derive the request status from its tasks under the request lock."""
        previous: dict[str, RequestStatus] = {}

        def apply(current: DesignRequest, tasks: list[DesignTask]) -> DesignRequest | None:
            # A rolled-back request has nothing in flight; late callbacks do not revive it.
            if current.status == "Draft":
                return None
            counted = active_tasks(tasks, current.submitted_at)
            status = aggregate_request_status((task.status for task in counted), current.status)
            if status == current.status:
                return None
            previous["status"] = current.status
            changes: dict[str, Any] = {"status": status}
            if status == "Completed" and current.completed_at is None:
                changes["completed_at"] = datetime.now(UTC)
            return current.model_copy(update=changes)

        request, changed = self.storage.mutate_request(request_id, apply)
        if changed:
            logger.info(
                "design_request event=status_changed request_id=%s from=%s to=%s",
                request_id,
                previous["status"],
                request.status,
            )
            self._notify(request, previous["status"])
        return request

    def _notify(self, request: DesignRequest, previous: RequestStatus) -> None:
        # The status change is already committed; listener failures stay contained.
        for listener in self.listeners:
            try:
                listener(request, previous)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "design_request event=listener_failed request_id=%s listener=%s",
                    request.request_id,
                    getattr(listener, "__name__", type(listener).__name__),
                )

    def _authenticate(self, body: dict[str, Any]) -> tuple[CallbackPayload, DesignTask]:
        """Parse and locate the callback's task, accepting only a valid secret.

        The deployment secret is checked before anything else. A scoped secret is
        checked against the located task's own (request_id, task_id); until it
        matches, parse and lookup failures are reported as authentication failures.
        """
        provided = require_secret(body, self.webhook_secret)
        trusted = secret_matches(provided, self.webhook_secret)
        try:
            callback = parse_callback(body)
            task = self._locate(callback)
        except (ValidationError, NotFoundError):
            if trusted:
                raise
            raise AuthenticationError("Invalid webhook secret") from None
        if not trusted and not secret_matches(
            provided,
            self.webhook_secret,
            request_id=task.request_id,
            task_id=task.task_id,
        ):
            raise AuthenticationError("Invalid webhook secret")
        return callback, task

    def _locate(self, callback: CallbackPayload) -> DesignTask:
        if callback.task_id:
            task = self.storage.get_task(callback.task_id)
        else:
            task = self.storage.find_task_by_external_id(callback.external_task_id)
        if task is None:
            logger.error(
                "design_callback event=task_not_found task_id=%s external_task_id=%s",
                callback.task_id,
                callback.external_task_id,
            )
            raise NotFoundError("Task not found")
        return task
