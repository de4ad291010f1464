"""Error taxonomy for design task orchestration.

Each error carries the HTTP status the API layer answers with. Per-task dispatch
failures are contained by the dispatcher and never reach the submission caller.
"""

from __future__ import annotations


class DesignOrchestrationError(Exception):
    """Base class for errors surfaced by the orchestration core."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(DesignOrchestrationError):
    """Missing or malformed submission/callback field."""

    status_code = 400


class AuthenticationError(DesignOrchestrationError):
    """Callback secret missing or mismatched."""

    status_code = 401


class NotFoundError(DesignOrchestrationError):
    """Unknown design request or task reference."""

    status_code = 404


class DispatchError(DesignOrchestrationError):
    """External platform call failed, reported failure, or timed out."""

    status_code = 502


class PersistenceError(DesignOrchestrationError):
    """Underlying store failure."""

    status_code = 500
