"""FastAPI application wiring for the design task orchestration service.

Terms used in this file:
- FastAPI app: the main web application object.
- app.state: shared runtime objects (storage, decomposer, reconciler).
- Exception handler: turns orchestration errors into their HTTP status + {"error": ...}.

Run with: uvicorn design_orchestrator.main:create_app --factory
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .app.decomposer import RequestDecomposer
from .app.dispatcher import Dispatcher
from .app.errors import DesignOrchestrationError, NotFoundError
from .app.models import (
    CallbackAck,
    CreateDesignRequest,
    DesignRequest,
    DesignRequestDetail,
    RequestStatus,
    SubmissionResult,
    SubmitDesignRequest,
)
from .app.platform_client import DesignPlatformClient, HttpDesignPlatformClient
from .app.reconciler import CallbackReconciler, RequestStatusListener
from .app.settings import Settings, get_settings
from .storage.base import DesignStorage
from .storage.postgres import PostgresDesignStorage

logger = logging.getLogger(__name__)


def create_app(
    *,
    storage: DesignStorage | None = None,
    settings_override: Settings | None = None,
    platform_client: DesignPlatformClient | None = None,
    listeners: Sequence[RequestStatusListener] = (),
) -> FastAPI:
    """Application factory.

    Tests inject an in-memory storage and a fake platform client; a real deployment
    only needs DESIGN_ORCHESTRATOR_DATABASE_URL and the webhook settings.
    """
    settings = settings_override or get_settings()

    if storage is None:
        # Fail fast if required configuration is missing.
        database_url = settings.resolved_database_url()
        if not database_url:
            raise RuntimeError(
                "Missing database URL. Set DESIGN_ORCHESTRATOR_DATABASE_URL "
                "or DATABASE_URL before starting the app."
            )
        storage = PostgresDesignStorage(database_url)
    storage.migrate()

    webhook_secret = settings.resolved_webhook_secret()
    if not webhook_secret:
        logger.warning(
            "design_app event=startup warning=webhook_secret_not_configured "
            "effect=all_callbacks_rejected"
        )

    client = platform_client or HttpDesignPlatformClient(
        webhook_url=settings.design_webhook_url,
        user_agent=settings.user_agent,
    )
    dispatcher = Dispatcher(
        storage=storage,
        client=client,
        callback_url=settings.callback_url(),
        webhook_secret=webhook_secret,
        timeout_s=settings.dispatch_timeout_s,
    )

    app = FastAPI(title=settings.app_name, version="0.1.0")
    # Shared objects live in app.state so route handlers can reuse them.
    app.state.settings = settings
    app.state.storage = storage
    app.state.reconciler = CallbackReconciler(
        storage=storage,
        webhook_secret=webhook_secret,
        listeners=listeners,
    )
    app.state.decomposer = RequestDecomposer(
        storage=storage,
        dispatcher=dispatcher,
        reconciler=app.state.reconciler,
        max_workers=settings.dispatch_max_workers,
    )

    @app.exception_handler(DesignOrchestrationError)
    async def orchestration_error_handler(
        _request: Request, exc: DesignOrchestrationError
    ) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("design_app event=error type=%s error=%s", type(exc).__name__, exc)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        _request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        fields = sorted(
            {
                ".".join(str(part) for part in err.get("loc", ()) if part != "body")
                for err in exc.errors()
            }
        )
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request payload", "fields": [f for f in fields if f]},
        )

    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/design-requests", response_model=DesignRequest, status_code=201)
    def create_design_request(payload: CreateDesignRequest) -> DesignRequest:
        record = app.state.storage.create_request(payload)
        logger.info(
            "design_request event=created request_id=%s request_number=%s",
            record.request_id,
            record.request_number,
        )
        return record

    @app.get("/api/design-requests", response_model=list[DesignRequest])
    def list_design_requests(status: RequestStatus | None = None) -> list[DesignRequest]:
        return app.state.storage.list_requests(status=status)

    @app.get("/api/design-requests/{request_id}", response_model=DesignRequestDetail)
    def get_design_request(request_id: str) -> DesignRequestDetail:
        record = app.state.storage.get_request(request_id)
        if record is None:
            raise NotFoundError("Design request not found")
        return DesignRequestDetail(
            **record.model_dump(),
            tasks=app.state.storage.list_tasks(request_id),
        )

    @app.post("/api/design-requests/{request_id}/submit", response_model=SubmissionResult)
    def submit_design_request(request_id: str, payload: SubmitDesignRequest) -> SubmissionResult:
        return app.state.decomposer.submit(request_id, payload.task_types)

    @app.post("/api/webhooks/design-callback", response_model=CallbackAck)
    def design_callback(body: Any = Body(...)) -> CallbackAck:
        try:
            return app.state.reconciler.handle(body)
        except DesignOrchestrationError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("design_callback event=error")
            raise DesignOrchestrationError("Failed to process webhook") from exc

    @app.get("/api/webhooks/design-callback")
    def design_callback_info() -> dict[str, str]:
        return {
            "endpoint": "design-callback",
            "status": "active",
            "message": "Webhook endpoint for design task updates from the external platform",
        }

    return app
