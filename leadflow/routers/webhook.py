import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from leadflow.database import get_db
from leadflow.logging_config import LoggerAdapter, get_logger
from leadflow.schemas.webhook import WebhookResponse
from leadflow.services.alert_service import alert_error
from leadflow.services.llm import LLMProvider, get_llm_provider
from leadflow.services.normalizer_service import verify_challenge
from leadflow.services.pipeline_service import process_webhook

logger = get_logger("webhook")

router = APIRouter()


@router.get("/webhook/whatsapp")
def verify_webhook(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    db: Session = Depends(get_db),
):
    """Cloud API subscription handshake."""
    challenge = verify_challenge(db, hub_mode, hub_verify_token, hub_challenge)
    if challenge is None:
        logger.warning("Webhook verification failed", extra={"context": {"mode": hub_mode}})
        raise HTTPException(status_code=403, detail="Verification failed")
    return PlainTextResponse(challenge)


@router.post("/webhook/whatsapp", response_model=WebhookResponse)
async def handle_webhook(
    request: Request,
    db: Session = Depends(get_db),
    llm: LLMProvider = Depends(get_llm_provider),
):
    """Receive Evolution API and Cloud API webhooks.

    Always answers 200: providers retry anything else, and retries of a
    message we already stored are dropped by the idempotency key anyway.
    The pipeline is synchronous (database, media and model calls), so it runs
    in the threadpool instead of on the event loop.
    """
    request_id = uuid.uuid4().hex[:8]
    log = LoggerAdapter(logger, {"request_id": request_id})
    try:
        payload = await request.json()
    except ValueError:
        log.warning("Webhook body is not JSON")
        return WebhookResponse(success=False, message="Invalid JSON", request_id=request_id)

    try:
        outcome = await run_in_threadpool(process_webhook, db, payload, llm)
    except Exception as e:
        db.rollback()
        log.error(f"Webhook processing error: {e}", exc_info=True)
        await run_in_threadpool(alert_error, "Webhook processing error", {"request_id": request_id, "error": str(e)})
        return WebhookResponse(success=False, message="Internal error", request_id=request_id)

    if outcome.kind == "ignored":
        return WebhookResponse(success=True, message=f"Ignored: {outcome.reason}", request_id=request_id)
    if outcome.kind == "status":
        return WebhookResponse(success=True, message="Status update processed", request_id=request_id)

    log.info(
        "Webhook processed",
        context={
            "processed": outcome.processed,
            "duplicates": outcome.duplicates,
            "failed": outcome.failed,
            "ai_replies": outcome.ai_replies,
        },
    )
    message = f"Processed {outcome.processed} message(s)"
    if outcome.duplicates:
        message += f", {outcome.duplicates} duplicate(s) skipped"
    if outcome.failed:
        message += f", {outcome.failed} failed"
    return WebhookResponse(
        success=outcome.failed == 0,
        message=message,
        processed=outcome.processed,
        ai_replies=outcome.ai_replies,
        request_id=request_id,
    )
