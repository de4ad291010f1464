"""Callback secrets handed to the design platform and checked on the way back."""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

from .errors import AuthenticationError

logger = logging.getLogger(__name__)

SECRET_KEYS: tuple[str, ...] = ("callbackSecret", "webhookSecret", "secret")


def scoped_callback_secret(deployment_secret: str, request_id: str, task_id: str) -> str:
    """Derive the per-(request, task) secret sent in a dispatch payload."""
    message = f"{request_id}:{task_id}".encode()
    return hmac.new(deployment_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def extract_secret(body: dict[str, Any]) -> str | None:
    for key in SECRET_KEYS:
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def require_secret(body: dict[str, Any], deployment_secret: str) -> str:
    """Return the secret carried by `body`, or raise AuthenticationError.

    With no deployment secret configured every callback is rejected.
    """
    if not deployment_secret:
        logger.warning("design_callback event=rejected reason=webhook_secret_not_configured")
        raise AuthenticationError("Invalid webhook secret")
    provided = extract_secret(body)
    if provided is None:
        raise AuthenticationError("Missing webhook secret")
    return provided


def secret_matches(
    provided: str,
    deployment_secret: str,
    *,
    request_id: str | None = None,
    task_id: str | None = None,
) -> bool:
    """Check `provided` against the deployment secret and, given an owner, the scoped one.

    Pass the located task's (request_id, task_id); body-supplied ids are not trusted.
    """
    candidates = [deployment_secret]
    if request_id and task_id:
        candidates.append(scoped_callback_secret(deployment_secret, request_id, task_id))

    # Compare against every candidate so timing does not reveal which one matched.
    matched = False
    for candidate in candidates:
        if hmac.compare_digest(provided.encode("utf-8"), candidate.encode("utf-8")):
            matched = True
    return matched
