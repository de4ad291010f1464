"""Send one design task to the external platform and record the immediate outcome."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError
from datetime import UTC, datetime

from .callback_auth import scoped_callback_secret
from .errors import DispatchError
from .models import DesignRequest, DesignTask, DispatchPayload, DispatchResponse, TaskOutcome
from .platform_client import DesignPlatformClient

logger = logging.getLogger(__name__)

REDACTED = "***"


class Dispatcher:
    """Dispatch tasks with a hard deadline; failures are recorded, never raised."""

    def __init__(
        self,
        *,
        storage,
        client: DesignPlatformClient,
        callback_url: str,
        webhook_secret: str,
        timeout_s: float = 30.0,
    ) -> None:
        self.storage = storage
        self.client = client
        self.callback_url = callback_url
        self.webhook_secret = webhook_secret
        self.timeout_s = timeout_s

    def build_payload(self, request: DesignRequest, task: DesignTask) -> DispatchPayload:
        return DispatchPayload(
            request_id=request.request_id,
            request_number=request.request_number,
            task_id=task.task_id,
            task_type=task.task_type,
            title=task.title,
            description=task.description,
            priority=task.priority,
            project_name=request.project_name,
            project_type=request.project_type,
            requirements=request.requirements,
            site_details=request.site_details or "",
            budget=request.budget,
            timeline=request.timeline,
            client_name=request.client_name,
            client_email=request.client_email,
            client_phone=request.client_phone,
            design_concept=request.design_concept,
            style_recommendations=request.style_recommendations,
            spatial_layout=request.spatial_layout,
            material_suggestions=request.material_suggestions,
            sustainability_features=request.sustainability_features,
            visualization_prompt=request.visualization_prompt,
            callback_url=self.callback_url,
            callback_secret=scoped_callback_secret(
                self.webhook_secret, request.request_id, task.task_id
            ),
        )

    def dispatch(self, request: DesignRequest, task: DesignTask) -> TaskOutcome:
        """Send `task` and move it Pending -> Queued, or Pending -> Failed."""
        payload = self.build_payload(request, task)
        started_at = time.perf_counter()
        try:
            response = self._send_with_deadline(payload)
        except DispatchError as exc:
            logger.warning(
                "design_dispatch event=failed request_id=%s task_id=%s task_type=%s "
                "duration_ms=%s error=%s",
                request.request_id,
                task.task_id,
                task.task_type,
                _duration_ms(started_at),
                exc.message,
            )
            self._record_failure(task, payload, exc.message)
            return TaskOutcome(
                task_id=task.task_id,
                task_type=task.task_type,
                status="failed",
                error=exc.message,
            )

        logger.info(
            "design_dispatch event=queued request_id=%s task_id=%s task_type=%s "
            "external_task_id=%s duration_ms=%s",
            request.request_id,
            task.task_id,
            task.task_type,
            response.external_task_id,
            _duration_ms(started_at),
        )
        self._record_success(task, payload, response)
        return TaskOutcome(
            task_id=task.task_id,
            task_type=task.task_type,
            status="success",
            external_task_id=response.external_task_id,
            message=response.message,
        )

    def _send_with_deadline(self, payload: DispatchPayload) -> DispatchResponse:
        # The socket timeout only bounds individual reads; the future bounds the whole call.
        pool = ThreadPoolExecutor(max_workers=1)
        future = pool.submit(self.client.send_task, payload, timeout_s=self.timeout_s)
        try:
            return future.result(timeout=self.timeout_s)
        except TimeoutError as exc:
            raise DispatchError(
                f"Request timeout: External platform did not respond within {self.timeout_s:.2f}s"
            ) from exc
        except DispatchError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise DispatchError(f"Failed to send task to external platform: {exc}") from exc
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _record_success(
        self, task: DesignTask, payload: DispatchPayload, response: DispatchResponse
    ) -> None:
        now = datetime.now(UTC)

        def apply(current: DesignTask) -> DesignTask:
            changes = {
                "external_task_id": response.external_task_id,
                "dispatch_payload": _redacted_payload(payload),
                "dispatch_response": response.model_dump(mode="json", by_alias=True),
                "last_sync_at": now,
            }
            # A fast callback may already have moved the task past Queued.
            if current.status == "Pending":
                changes["status"] = "Queued"
                changes["external_status"] = response.status
            return current.model_copy(update=changes)

        self.storage.mutate_task(task.task_id, apply)

    def _record_failure(self, task: DesignTask, payload: DispatchPayload, reason: str) -> None:
        def apply(current: DesignTask) -> DesignTask:
            changes = {
                "dispatch_payload": _redacted_payload(payload),
                "dispatch_response": {"success": False, "error": reason},
            }
            if current.status == "Pending":
                changes["status"] = "Failed"
                changes["error_message"] = reason
            return current.model_copy(update=changes)

        self.storage.mutate_task(task.task_id, apply)


def _redacted_payload(payload: DispatchPayload) -> dict:
    snapshot = payload.to_wire()
    snapshot["callbackSecret"] = REDACTED
    return snapshot


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
