"""WHOOP webhook receiver.

WHOOP posts ``{user_id, id, type, trace_id}`` for recovery, sleep and workout
updates and deletions, signed with the app's client secret.  The handler only
verifies, deduplicates and enqueues; the fetch happens on the pipeline's
workers.  Anything but a bad signature is acknowledged with 200 so WHOOP stops
redelivering.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from src.dependencies import WhoopService
from src.whoop.sync.pipeline import PipelineOutcome

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("whoopsync.webhooks")


@router.post("/whoop")
async def whoop_webhook(
    request: Request,
    service: WhoopService,
    x_whoop_signature: str | None = Header(None, alias="X-WHOOP-Signature"),
    x_whoop_signature_timestamp: str | None = Header(None, alias="X-WHOOP-Signature-Timestamp"),
) -> JSONResponse:
    """Handle one WHOOP webhook delivery.

    Returns:
        403 for a missing or invalid signature, 200 otherwise.
    """
    body = await request.body()
    try:
        outcome = await service.pipeline.receive(
            body, x_whoop_signature, x_whoop_signature_timestamp
        )
    except Exception:
        logger.exception("Unexpected error in WHOOP webhook handler; acknowledging")
        outcome = PipelineOutcome.ACKED

    if outcome is PipelineOutcome.REJECTED:
        return JSONResponse(status_code=403, content={"detail": "Invalid webhook signature"})
    return JSONResponse(status_code=200, content={"status": outcome.value})
