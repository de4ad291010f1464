"""Turn one design request submission into N dispatched tasks.

Terms used in this file:
- Descriptor: one requested deliverable ({type, title?, description?, priority?}).
- Outcome: per-descriptor result ("success" when the platform accepted the task).

Each descriptor is handled independently: a failed dispatch (or a store error while
recording it) becomes a "failed" outcome for that descriptor only. The request is
then updated once from the outcome counts.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

from .aggregator import active_tasks
from .dispatcher import Dispatcher
from .errors import DesignOrchestrationError, NotFoundError, ValidationError
from .models import (
    DeliverableDescriptor,
    DesignRequest,
    DesignTask,
    RequestStatus,
    SubmissionResult,
    TaskOutcome,
)
from .reconciler import CallbackReconciler

logger = logging.getLogger(__name__)

# Statuses from which a request may be (re)submitted.
SUBMITTABLE_STATUSES: frozenset[str] = frozenset({"Draft", "Submitted"})


class RequestDecomposer:
    def __init__(
        self,
        *,
        storage,
        dispatcher: Dispatcher,
        reconciler: CallbackReconciler | None = None,
        max_workers: int = 4,
    ) -> None:
        self.storage = storage
        self.dispatcher = dispatcher
        self.reconciler = reconciler
        self.max_workers = max(1, max_workers)

    def submit(
        self, request_id: str, descriptors: list[DeliverableDescriptor]
    ) -> SubmissionResult:
        if not descriptors:
            raise ValidationError("At least one deliverable type is required")

        request = self.storage.get_request(request_id)
        if request is None:
            raise NotFoundError("Design request not found")
        if request.status not in SUBMITTABLE_STATUSES:
            raise ValidationError(
                f"Design request {request.request_number} cannot be submitted "
                f"from status {request.status}"
            )

        request = self.storage.update_request(
            request_id,
            {"status": "Submitted", "submitted_at": datetime.now(UTC)},
        )
        logger.info(
            "design_submit event=start request_id=%s request_number=%s descriptors=%s",
            request_id,
            request.request_number,
            len(descriptors),
        )

        # Outcomes keep descriptor order regardless of completion order.
        workers = min(self.max_workers, len(descriptors))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(
                pool.map(lambda descriptor: self._submit_one(request, descriptor), descriptors)
            )

        results = [outcome for outcome in outcomes if outcome.status == "success"]
        errors = [outcome for outcome in outcomes if outcome.status == "failed"]
        final_status = self._settle_request(request_id, succeeded=len(results), failed=len(errors))

        logger.info(
            "design_submit event=completed request_id=%s tasks_created=%s tasks_failed=%s "
            "status=%s",
            request_id,
            len(results),
            len(errors),
            final_status,
        )
        return SubmissionResult(
            success=len(results) > 0,
            tasks_created=len(results),
            tasks_failed=len(errors),
            request_status=final_status,
            results=results,
            errors=errors,
        )

    def _submit_one(
        self, request: DesignRequest, descriptor: DeliverableDescriptor
    ) -> TaskOutcome:
        try:
            task = self._create_task(request, descriptor)
        except DesignOrchestrationError as exc:
            logger.error(
                "design_submit event=task_create_failed request_id=%s task_type=%s error=%s",
                request.request_id,
                descriptor.type,
                exc.message,
            )
            return TaskOutcome(task_type=descriptor.type, status="failed", error=exc.message)

        try:
            return self.dispatcher.dispatch(request, task)
        except DesignOrchestrationError as exc:
            # Dispatch itself never raises; this is a store failure while recording.
            logger.error(
                "design_submit event=task_record_failed request_id=%s task_id=%s error=%s",
                request.request_id,
                task.task_id,
                exc.message,
            )
            return TaskOutcome(
                task_id=task.task_id,
                task_type=descriptor.type,
                status="failed",
                error=exc.message,
            )

    def _create_task(self, request: DesignRequest, descriptor: DeliverableDescriptor) -> DesignTask:
        return self.storage.create_task(
            request_id=request.request_id,
            task_type=descriptor.type,
            title=descriptor.title or f"{descriptor.type} Task",
            description=descriptor.description
            or f"{descriptor.type} for {request.project_name}",
            priority=descriptor.priority or "Normal",
        )

    def _settle_request(self, request_id: str, *, succeeded: int, failed: int) -> RequestStatus:
        """Apply the one post-dispatch request update.

        - no failures -> AIProcessing
        - no successes and no other live task -> back to Draft, submission time cleared
        - otherwise -> stays Submitted
        If callbacks already moved the request on, it is recomputed from its tasks instead,
        since tasks queued after that callback were not counted.
        """
        moved_on = False

        def apply(current: DesignRequest, tasks: list[DesignTask]) -> DesignRequest | None:
            nonlocal moved_on
            if current.status != "Submitted":
                moved_on = True
                return None
            if failed == 0:
                return current.model_copy(update={"status": "AIProcessing"})
            live = [
                task
                for task in active_tasks(tasks, current.submitted_at)
                if task.status != "Failed"
            ]
            if succeeded == 0 and not live:
                return current.model_copy(update={"status": "Draft", "submitted_at": None})
            return None

        settled, _ = self.storage.mutate_request(request_id, apply)
        if moved_on and self.reconciler is not None:
            settled = self.reconciler.recompute_request(request_id)
        return settled.status
