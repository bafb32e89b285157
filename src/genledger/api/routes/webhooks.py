"""Provider webhook endpoints.

KIE calls POST /webhooks/kie when a task changes state. Terminal callbacks are
reconciled exactly like poll results; duplicates and unknown task ids are
acknowledged with 200 so the provider stops redelivering them.
"""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from genledger.api.dependencies import get_services, validate_kie_webhook
from genledger.services.container import Services
from genledger.services.providers.kie_client import KieClient

logger = structlog.get_logger()
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/kie", status_code=status.HTTP_200_OK)
async def kie_callback(
    payload: dict[str, Any] = Depends(validate_kie_webhook),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Receive a KIE task callback.

    Processing flow:
    1. Validate signature and taskId (dependency)
    2. Match the task to a job by external_task_id
    3. Progress callbacks update progress_percent
    4. Terminal callbacks finalize the job (refunding failures)

    Returns:
        {"status": "success" | "duplicate" | "ignored", "taskId": ...}

    Raises:
        HTTPException 400: Missing taskId (dependency)
        HTTPException 401: Invalid signature (dependency)
        HTTPException 500: Unexpected processing error (KIE retries delivery)
    """
    task_id = KieClient.extract_task_id(payload)
    state = KieClient.get_state(payload)

    logger.info("callback.kie_received", task_id=task_id, state=state.value)

    try:
        outcome = await services.tracker.on_callback(task_id, payload, provider="kie")
    except Exception as e:
        logger.error(
            "callback.processing_failed",
            task_id=task_id,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=e,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process callback",
        )

    if outcome is None:
        return {"status": "ignored", "taskId": task_id, "state": state.value}
    if not outcome.applied:
        return {"status": "duplicate", "taskId": task_id, "jobStatus": outcome.status.value}
    return {
        "status": "success",
        "taskId": task_id,
        "jobId": str(outcome.job_id),
        "jobStatus": outcome.status.value,
        "refundIssued": outcome.refund_issued,
    }
