"""FastAPI dependencies for request validation and common operations.

This module provides reusable FastAPI dependencies for:
- Settings and service access from app.state
- KIE webhook payload parsing and signature validation
- Mapping service errors onto HTTP responses
"""

import json
import time
from typing import Annotated, Any

import structlog
from fastapi import Depends, Header, HTTPException, Request, status

from genledger.core.config import Settings
from genledger.services.container import Services
from genledger.services.exceptions import (
    AccountNotFound,
    GenLedgerError,
    InsufficientBalance,
    InvalidModel,
    InvalidRequest,
    JobNotFound,
    ProviderError,
)
from genledger.services.providers.kie_client import KieClient

logger = structlog.get_logger()


def get_settings(request: Request) -> Settings:
    """Get application settings from app state.

    Returns:
        Settings instance loaded by the lifespan (or set by tests)
    """
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        settings = Settings()  # type: ignore[call-arg]  # Pydantic loads from env vars
    return settings


def _timestamp_is_fresh(timestamp_seconds: str, max_age_seconds: int) -> bool:
    try:
        sent_at = int(timestamp_seconds)
    except ValueError:
        return False
    return abs(time.time() - sent_at) <= max_age_seconds


def get_services(request: Request) -> Services:
    """Get wired application services from app state."""
    return request.app.state.services


async def validate_kie_webhook(
    request: Request,
    x_webhook_timestamp: Annotated[str | None, Header()] = None,
    x_webhook_signature: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """Parse a KIE callback and validate its signature.

    KIE signs callbacks with base64(HMAC-SHA256(key, "{taskId}.{timestamp}")).
    Validation runs only when KIE_WEBHOOK_HMAC_KEY is configured.
    Signed callbacks older or newer than KIE_WEBHOOK_MAX_AGE_SECONDS are rejected.

    Args:
        request: FastAPI Request object (contains raw body)
        x_webhook_timestamp: Timestamp from X-Webhook-Timestamp header
        x_webhook_signature: Signature from X-Webhook-Signature header
        settings: Application settings (injected via dependency)

    Returns:
        Parsed callback payload (guaranteed to carry a taskId)

    Raises:
        HTTPException: 400 if the body is not JSON or has no taskId,
            401 if the signature is missing, invalid or outside the time window
    """
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body) if raw_body else {}
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    task_id = KieClient.extract_task_id(payload)
    if not task_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="TaskId is required")

    if settings.kie_webhook_hmac_key:
        if not x_webhook_timestamp or not x_webhook_signature:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing webhook signature headers"
            )
        is_valid = KieClient.verify_webhook_signature(
            task_id=task_id,
            timestamp_seconds=x_webhook_timestamp,
            received_signature=x_webhook_signature,
            webhook_hmac_key=settings.kie_webhook_hmac_key,
        )
        if not is_valid:
            logger.warning("callback.invalid_signature", task_id=task_id)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature"
            )
        if not _timestamp_is_fresh(x_webhook_timestamp, settings.kie_webhook_max_age_seconds):
            logger.warning(
                "callback.stale_timestamp", task_id=task_id, timestamp=x_webhook_timestamp
            )
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED, detail="Webhook timestamp outside allowed window"
            )

    return payload


def to_http_exception(error: GenLedgerError) -> HTTPException:
    """Map a service error onto an HTTP error response."""
    if isinstance(error, (InvalidModel, InvalidRequest)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, InsufficientBalance):
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "error": "insufficient_balance",
                "required": error.required,
                "available": error.available,
            },
        )
    if isinstance(error, (AccountNotFound, JobNotFound)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, ProviderError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
