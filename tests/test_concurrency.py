from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

from fastapi.testclient import TestClient

from design_helpers import StatusEvents, callback, create_design_request, submit
from design_orchestrator.app.models import CreateDesignRequest, DesignRequest
from design_orchestrator.storage.memory import InMemoryDesignStorage


def test_concurrent_completions_for_one_request_end_completed(
    client: TestClient, status_events: StatusEvents
) -> None:
    task_types = [f"Deliverable {index}" for index in range(8)]
    request = create_design_request(client)
    submit(client, request["requestId"], task_types)
    detail = client.get(f"/api/design-requests/{request['requestId']}").json()
    task_ids = [task["taskId"] for task in detail["tasks"]]

    def complete(task_id: str) -> int:
        return callback(client, taskId=task_id, status="completed").status_code

    with ThreadPoolExecutor(max_workers=len(task_ids)) as pool:
        codes = list(pool.map(complete, task_ids))

    assert codes == [200] * len(task_ids)
    final = client.get(f"/api/design-requests/{request['requestId']}").json()
    assert final["status"] == "Completed"
    assert {task["status"] for task in final["tasks"]} == {"Completed"}
    assert [event[2] for event in status_events.events].count("Completed") == 1


def test_concurrent_redeliveries_apply_once(
    client: TestClient, storage: InMemoryDesignStorage
) -> None:
    request = create_design_request(client)
    submit(client, request["requestId"], ["Rendering", "Structural"])
    detail = client.get(f"/api/design-requests/{request['requestId']}").json()
    rendering = next(task for task in detail["tasks"] if task["taskType"] == "Rendering")
    writes_before = storage.write_count

    def deliver(_: int) -> int:
        return callback(
            client, taskId=rendering["taskId"], status="completed", progress=100
        ).status_code

    with ThreadPoolExecutor(max_workers=6) as pool:
        codes = list(pool.map(deliver, range(6)))

    assert codes == [200] * 6
    # One task write plus one request write (AIProcessing -> Rendering).
    assert storage.write_count == writes_before + 2


def test_mutate_request_serializes_read_modify_write() -> None:
    storage = InMemoryDesignStorage()
    record = storage.create_request(
        CreateDesignRequest(
            client_name="Avery Stone",
            client_email="avery@example.com",
            project_name="Harbor View Offices",
            project_type="Commercial",
            requirements="Rooftop terrace",
            timeline="Q3",
        )
    )
    barrier = threading.Barrier(4)

    def append_marker(index: int) -> None:
        barrier.wait()

        def apply(current: DesignRequest, _tasks: list) -> DesignRequest:
            existing = current.description or ""
            return current.model_copy(update={"description": f"{existing}{index}"})

        storage.mutate_request(record.request_id, apply)

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(append_marker, range(4)))

    final = storage.get_request(record.request_id)
    assert final is not None
    assert sorted(final.description or "") == ["0", "1", "2", "3"]
