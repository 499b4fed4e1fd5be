"""Provider webhook endpoints.

Replicate posts the prediction body to POST /webhooks/replicate when a
prediction finishes. The payload is reconciled through the same path as
polling, so duplicate deliveries and races with the worker are harmless.
"""

import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from forge3d.api.dependencies import get_reconciler, validate_replicate_signature
from forge3d.services.exceptions import ServiceError
from forge3d.services.generation.replicate_client import parse_replicate_webhook
from forge3d.services.reconciler import JobReconciler

logger = structlog.get_logger()
router = APIRouter()


@router.post("/replicate")
async def receive_replicate_webhook(
    raw_body: bytes = Depends(validate_replicate_signature),
    reconciler: JobReconciler = Depends(get_reconciler),
):
    """Receive a Replicate prediction callback.

    This endpoint:
    1. Validates the HMAC signature (via dependency)
    2. Parses prediction id and status from the payload
    3. Reconciles the owning generation request

    HTTP Status Codes:
        200: Applied, ignored (unknown or already terminal) or deferred to the
             poll worker after a storage/provider error
        400: Malformed payload
        401: Missing or invalid signature
    """
    try:
        payload = json.loads(raw_body)
        job_id, provider_status = parse_replicate_webhook(payload)
    except (json.JSONDecodeError, ValueError, AttributeError) as e:
        logger.error("webhook.invalid_payload", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid payload: {str(e)}",
        )

    logger.info(
        "webhook.received",
        external_job_id=job_id,
        provider_state=provider_status.state.value,
    )

    try:
        outcome = await reconciler.handle_webhook(job_id, provider_status)
    except ServiceError as e:
        # Record unchanged; the reconciliation worker picks it up on its next tick
        logger.warning(
            "webhook.deferred",
            external_job_id=job_id,
            error_type=type(e).__name__,
            error_message=str(e),
        )
        return {"status": "deferred", "job_id": job_id}

    return {"status": "success", "job_id": job_id, "outcome": outcome.value}
