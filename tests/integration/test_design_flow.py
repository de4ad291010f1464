from __future__ import annotations

import pytest

pytestmark = pytest.mark.integration


def _design_request() -> dict[str, object]:
    return {
        "clientName": "Jordan Ellis",
        "clientEmail": "jordan@example.com",
        "projectName": "Maple Street Townhomes",
        "projectType": "Residential",
        "requirements": "Six units, shared courtyard, solar-ready roofs",
        "timeline": "Six months",
        "budget": 1800000,
    }


def test_submit_and_complete_design_request(
    api_base_url: str, design_platform, post_json, get_json
) -> None:
    create_status, created = post_json(api_base_url, "/api/design-requests", _design_request())
    assert create_status == 201
    request_id = created["requestId"]

    submit_status, submission = post_json(
        api_base_url,
        f"/api/design-requests/{request_id}/submit",
        {"taskTypes": ["Architectural", "Rendering"]},
    )
    assert submit_status == 200
    assert submission["tasksCreated"] == 2
    assert submission["requestStatus"] == "AIProcessing"

    received = [item for item in design_platform.received if item["requestId"] == request_id]
    assert {item["taskType"] for item in received} == {"Architectural", "Rendering"}
    assert all(item["callbackUrl"].startswith(api_base_url) for item in received)

    for item in received:
        status, ack = post_json(
            api_base_url,
            "/api/webhooks/design-callback",
            {
                "callbackSecret": item["callbackSecret"],
                "requestId": request_id,
                "taskId": item["taskId"],
                "status": "completed",
                "resultUrl": f"https://cdn.example.test/{item['taskId']}.png",
            },
        )
        assert status == 200
        assert ack["status"] == "Completed"

    detail_status, detail = get_json(api_base_url, f"/api/design-requests/{request_id}")
    assert detail_status == 200
    assert detail["status"] == "Completed"
    assert detail["completedAt"] is not None
    assert all(task["dispatchPayload"]["callbackSecret"] == "***" for task in detail["tasks"])


def test_callback_for_unknown_external_task_returns_404(api_base_url: str, post_json) -> None:
    status, body = post_json(
        api_base_url,
        "/api/webhooks/design-callback",
        {
            "callbackSecret": "integration-webhook-secret",
            "externalTaskId": "ext-does-not-exist",
            "status": "completed",
        },
    )
    assert status == 404
    assert body == {"error": "Task not found"}


def test_callback_with_wrong_secret_is_rejected(api_base_url: str, post_json) -> None:
    status, body = post_json(
        api_base_url,
        "/api/webhooks/design-callback",
        {"callbackSecret": "nope", "taskId": "anything", "status": "completed"},
    )
    assert status == 401
    assert "error" in body
