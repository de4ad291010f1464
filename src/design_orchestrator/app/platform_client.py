from __future__ import annotations

import json
import logging
from typing import Any, Protocol
from urllib import error, request

from .errors import DispatchError
from .models import DispatchPayload, DispatchResponse

logger = logging.getLogger(__name__)


class DesignPlatformClient(Protocol):
    def send_task(self, payload: DispatchPayload, *, timeout_s: float) -> DispatchResponse: ...


class HttpDesignPlatformClient:
    """POST dispatch payloads to the external design platform webhook."""

    def __init__(self, *, webhook_url: str, user_agent: str = "Construction-CRM/1.0") -> None:
        if not webhook_url:
            raise ValueError("webhook_url is required")
        self.webhook_url = webhook_url
        self.user_agent = user_agent

    def send_task(self, payload: DispatchPayload, *, timeout_s: float) -> DispatchResponse:
        """Send one task; return the normalized reply or raise DispatchError."""
        body = json.dumps(payload.to_wire()).encode("utf-8")
        req = request.Request(
            url=self.webhook_url,
            data=body,
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": self.user_agent,
            },
        )
        logger.info(
            "design_dispatch event=send task_id=%s task_type=%s url=%s",
            payload.task_id,
            payload.task_type,
            self.webhook_url,
        )

        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                raw_body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            parsed_error = _parse_json_object(raw_error) or {}
            message = (
                parsed_error.get("error")
                or parsed_error.get("message")
                or f"HTTP {exc.code}: {exc.reason}"
            )
            raise DispatchError(str(message)) from exc
        except TimeoutError as exc:
            raise DispatchError(
                "Request timeout: External platform did not respond in time"
            ) from exc
        except error.URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                raise DispatchError(
                    "Request timeout: External platform did not respond in time"
                ) from exc
            raise DispatchError(f"Failed to connect to external platform: {exc.reason}") from exc

        parsed = _parse_json_object(raw_body)
        if parsed is None:
            raise DispatchError("Invalid JSON response from external platform")
        return normalize_dispatch_response(parsed)


def normalize_dispatch_response(raw: dict[str, Any]) -> DispatchResponse:
    """Map a 2xx platform reply onto DispatchResponse.

    The platform has answered with `externalTaskId`, `taskId` or `id` over time;
    any of them is accepted. An explicit `success: false` is treated as failure.
    """
    if raw.get("success") is False:
        raise DispatchError(str(raw.get("error") or raw.get("message") or "Platform rejected task"))

    external_task_id = raw.get("externalTaskId") or raw.get("taskId") or raw.get("id")
    return DispatchResponse(
        success=True,
        external_task_id=_optional_str(external_task_id),
        status=str(raw.get("status") or "queued"),
        message=_optional_str(raw.get("message")),
        estimated_completion_time=_optional_str(raw.get("estimatedCompletionTime")),
    )


def _parse_json_object(raw: str) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if isinstance(parsed, dict):
        return parsed
    return None


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)
