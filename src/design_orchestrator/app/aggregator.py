"""Request status aggregation and task transition rules.

These functions are pure and never touch storage, so the reconciler can call them
inside whatever lock guards the read-recompute-write.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from .models import TERMINAL_TASK_STATUSES, DesignTask, RequestStatus, TaskStatus

# Forward order of the task state machine. Failed shares the terminal rank.
_TASK_RANK: dict[str, int] = {
    "Pending": 0,
    "Queued": 1,
    "Processing": 2,
    "Completed": 3,
    "Failed": 3,
}

_IN_FLIGHT: frozenset[str] = frozenset({"Queued", "Processing"})


def aggregate_request_status(
    task_statuses: Iterable[TaskStatus],
    current: RequestStatus,
) -> RequestStatus:
    """Derive a request status from its tasks' statuses.

    - every task Completed -> Completed
    - some task Failed and none Queued/Processing -> UnderReview
    - some task Queued/Processing -> Rendering
    - otherwise the current status is kept
    """
    statuses = list(task_statuses)
    if not statuses:
        return current
    if all(status == "Completed" for status in statuses):
        return "Completed"
    in_flight = any(status in _IN_FLIGHT for status in statuses)
    if not in_flight and any(status == "Failed" for status in statuses):
        return "UnderReview"
    if in_flight:
        return "Rendering"
    return current


def is_forward_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Return True when moving a task from `current` to `target` is allowed.

    Terminal states are never left. Non-terminal states may only move forward;
    skipping states (Queued -> Completed) is fine because callbacks can be lost.
    """
    if current in TERMINAL_TASK_STATUSES:
        return False
    return _TASK_RANK[target] > _TASK_RANK[current]


def active_tasks(tasks: Iterable[DesignTask], submitted_at: datetime | None) -> list[DesignTask]:
    """Drop Failed tasks that a later submission replaced with a task of the same type.

    Tasks created at or after `submitted_at` belong to the latest submission. A Failed
    task from an earlier submission no longer counts once its deliverable type was
    resubmitted.
    """
    tasks = list(tasks)
    if submitted_at is None:
        return tasks
    resubmitted = {task.task_type for task in tasks if task.created_at >= submitted_at}
    return [
        task
        for task in tasks
        if not (
            task.status == "Failed"
            and task.created_at < submitted_at
            and task.task_type in resubmitted
        )
    ]
