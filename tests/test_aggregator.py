from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from design_orchestrator.app.aggregator import (
    active_tasks,
    aggregate_request_status,
    is_forward_transition,
)
from design_orchestrator.app.models import DesignTask


@pytest.mark.parametrize(
    ("statuses", "current", "expected"),
    [
        (["Completed", "Completed", "Completed"], "Rendering", "Completed"),
        (["Completed", "Failed"], "Rendering", "UnderReview"),
        (["Failed", "Failed"], "AIProcessing", "UnderReview"),
        (["Completed", "Processing", "Failed"], "AIProcessing", "Rendering"),
        (["Queued", "Completed"], "Submitted", "Rendering"),
        (["Pending", "Completed"], "Submitted", "Submitted"),
        ([], "AIProcessing", "AIProcessing"),
    ],
)
def test_aggregate_request_status(statuses: list[str], current: str, expected: str) -> None:
    assert aggregate_request_status(statuses, current) == expected


def test_aggregate_depends_only_on_the_multiset() -> None:
    statuses = ["Queued", "Failed", "Completed"]
    assert aggregate_request_status(statuses, "Submitted") == aggregate_request_status(
        list(reversed(statuses)), "Submitted"
    )


def test_forward_transitions_allowed() -> None:
    assert is_forward_transition("Pending", "Queued")
    assert is_forward_transition("Pending", "Failed")
    assert is_forward_transition("Queued", "Processing")
    assert is_forward_transition("Queued", "Completed")
    assert is_forward_transition("Processing", "Failed")


def test_backward_and_terminal_transitions_rejected() -> None:
    assert not is_forward_transition("Processing", "Queued")
    assert not is_forward_transition("Queued", "Queued")
    assert not is_forward_transition("Queued", "Pending")
    assert not is_forward_transition("Completed", "Processing")
    assert not is_forward_transition("Completed", "Failed")
    assert not is_forward_transition("Failed", "Completed")


def _task(task_id: str, task_type: str, status: str, created_at: datetime) -> DesignTask:
    return DesignTask(
        task_id=task_id,
        request_id="req-1",
        task_type=task_type,
        title=task_type,
        description="",
        status=status,
        created_at=created_at,
        updated_at=created_at,
    )


def test_active_tasks_drops_failed_tasks_replaced_by_resubmission() -> None:
    first = datetime(2026, 3, 1, tzinfo=UTC)
    second = first + timedelta(hours=1)
    tasks = [
        _task("t1", "Architectural", "Completed", first),
        _task("t2", "Structural", "Failed", first),
        _task("t3", "Rendering", "Failed", first),
        _task("t4", "Structural", "Queued", second),
    ]

    kept = [task.task_id for task in active_tasks(tasks, second)]

    # Rendering was not resubmitted, so its failure still counts.
    assert kept == ["t1", "t3", "t4"]
    assert [task.task_id for task in active_tasks(tasks, None)] == ["t1", "t2", "t3", "t4"]
