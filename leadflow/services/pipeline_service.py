"""Inbound message pipeline: normalized event in, stored message and optional AI reply out."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadflow.config import settings
from leadflow.logging_config import get_logger
from leadflow.models import ChannelConnection
from leadflow.schemas.inbound import ConnectionUpdate, ContentKind, InboundEvent, Provider
from leadflow.services.alert_service import alert_error
from leadflow.services.analysis_service import analyze_conversation, qualify_lead
from leadflow.services.eligibility_service import TRANSFER_REQUESTED, check_eligibility
from leadflow.services.lead_service import resolve_conversation, resolve_lead, touch_conversation, touch_lead
from leadflow.services.learning_service import record_inbound
from leadflow.services.llm import LLMProvider
from leadflow.services.media_service import resolve_audio, resolve_image, with_download_url
from leadflow.services.message_service import inbound_exists, save_inbound
from leadflow.services.normalizer_service import normalize
from leadflow.services.notification_service import PostCommitEvents, ai_response_event, new_message_event
from leadflow.services.response_service import ReplyRequest, generate_reply
from leadflow.services.sender_service import send_text

logger = get_logger("pipeline_service")


@dataclass
class EventOutcome:
    stored: bool
    duplicate: bool = False
    ai_replied: bool = False
    skip_reason: Optional[str] = None


@dataclass
class WebhookOutcome:
    kind: str
    processed: int = 0
    ai_replies: int = 0
    duplicates: int = 0
    failed: int = 0
    updates: int = 0
    reason: Optional[str] = None
    errors: List[str] = field(default_factory=list)


def apply_connection_updates(db: Session, updates: List[ConnectionUpdate]) -> int:
    """Persist connection state changes and QR codes."""
    applied = 0
    now = datetime.now(timezone.utc)
    for update in updates:
        connection = db.query(ChannelConnection).filter(ChannelConnection.id == update.connection_id).first()
        if connection is None:
            continue
        connection.status = update.status
        if update.status == "connected":
            connection.qr_code = None
        if update.qr_code:
            connection.qr_code = update.qr_code
        if update.phone_number:
            connection.phone_number = update.phone_number
        connection.updated_at = now
        applied += 1
    if applied:
        db.commit()
    return applied


def resolve_media_text(event: InboundEvent, connection: ChannelConnection, llm: LLMProvider) -> str:
    """Replace audio and image placeholders with a transcript or description."""
    if event.content_kind not in (ContentKind.AUDIO, ContentKind.IMAGE) or event.media_ref is None:
        return event.text

    headers: dict = {}
    media_ref = event.media_ref
    if event.provider == Provider.OFFICIAL:
        media_ref, headers = with_download_url(media_ref, connection.access_token)

    if event.content_kind == ContentKind.AUDIO:
        return resolve_audio(media_ref, llm, headers=headers or None)
    return resolve_image(media_ref, media_ref.caption if media_ref else None, llm, headers=headers or None)


def _should_qualify(message_count: int) -> bool:
    every = settings.qualify_every_n_messages
    return every > 0 and message_count > 0 and message_count % every == 0


def _analyze(db: Session, event: InboundEvent, lead, conversation, llm: LLMProvider, events: PostCommitEvents) -> None:
    analyze_conversation(
        db,
        event.tenant_id,
        llm,
        lead_id=lead.id,
        conversation_id=conversation.id,
        messages=[{"content": event.text, "sender_type": "lead"}],
        realtime=True,
    )
    if _should_qualify(lead.message_count or 0):
        qualify_lead(db, event.tenant_id, lead.id, llm, conversation_id=conversation.id, events=events)


def process_event(db: Session, event: InboundEvent, connection: ChannelConnection, llm: LLMProvider) -> EventOutcome:
    """Store one inbound message and, when the gate allows it, reply automatically.

    The inbound message is committed before the model is called, so a failing
    reply never loses the customer's message.
    """
    events = PostCommitEvents()
    log_context = {"tenant_id": str(event.tenant_id), "external_message_id": event.external_message_id}

    # Retried media is not resolved twice; save_inbound still enforces uniqueness.
    if event.content_kind in (ContentKind.AUDIO, ContentKind.IMAGE) and inbound_exists(
        db, event.tenant_id, event.external_message_id
    ):
        logger.info("Duplicate media message skipped before resolving", extra={"context": log_context})
        return EventOutcome(stored=False, duplicate=True)

    text = resolve_media_text(event, connection, llm)
    if text != event.text:
        event = event.model_copy(update={"text": text})

    lead = resolve_lead(db, event.tenant_id, event.sender_phone, event.sender_display_name)
    conversation = resolve_conversation(db, lead)

    message = save_inbound(db, conversation.id, event)
    if message is None:
        db.commit()
        return EventOutcome(stored=False, duplicate=True)

    now = datetime.now(timezone.utc)
    touch_lead(lead, event.text, now)
    touch_conversation(conversation, now)
    events.notify(
        new_message_event(
            event.tenant_id,
            lead.id,
            lead.display_name or lead.phone,
            event.text,
            user_id=conversation.assigned_owner,
        )
    )

    try:
        with db.begin_nested():
            record_inbound(db, event.tenant_id, now)
    except SQLAlchemyError as e:
        logger.error(f"Learning counter update failed: {e}", extra={"context": log_context})

    db.commit()
    events.flush(db)
    logger.info(
        "Inbound message stored",
        extra={"context": {**log_context, "message_id": str(message.id), "kind": event.content_kind.value}},
    )

    outcome = EventOutcome(stored=True)
    decision, config = check_eligibility(db, event.tenant_id, event.channel_connection_id, event.text)
    if decision.eligible:
        result = generate_reply(
            db,
            ReplyRequest(
                tenant_id=event.tenant_id,
                conversation_id=conversation.id,
                message=event.text,
                lead_id=lead.id,
                connection_id=event.channel_connection_id,
                config=config,
            ),
            llm,
            events=events,
        )
        if result.ok:
            reply = result.value.reply
            sent = send_text(connection, event.sender_phone, reply)
            if sent.ok:
                events.notify(ai_response_event(event.tenant_id, lead.id, lead.display_name or lead.phone, reply))
            else:
                logger.warning(f"AI reply stored but not delivered: {sent.error}", extra={"context": log_context})
            outcome.ai_replied = True
        else:
            outcome.skip_reason = result.error_code
            logger.info(f"AI reply skipped: {result.error_code}", extra={"context": log_context})
    else:
        outcome.skip_reason = decision.reason
        if decision.reason == TRANSFER_REQUESTED and conversation.status != "pending":
            conversation.status = "pending"
            conversation.updated_at = datetime.now(timezone.utc)

    _analyze(db, event, lead, conversation, llm, events)
    db.commit()
    events.flush(db)
    return outcome


def _connection_for(db: Session, event: InboundEvent) -> Optional[ChannelConnection]:
    return db.query(ChannelConnection).filter(ChannelConnection.id == event.channel_connection_id).first()


def process_webhook(db: Session, payload: Any, llm: LLMProvider) -> WebhookOutcome:
    """Normalize a provider webhook and run every message it carries through the pipeline.

    One failing message is rolled back and reported without affecting the others.
    """
    normalized = normalize(db, payload)
    if normalized.kind == "ignored":
        return WebhookOutcome(kind="ignored", reason=normalized.reason)

    if normalized.kind == "status":
        applied = apply_connection_updates(db, normalized.updates)
        return WebhookOutcome(kind="status", updates=applied, reason=normalized.reason)

    outcome = WebhookOutcome(kind="events")
    for event in normalized.events:
        connection = _connection_for(db, event)
        if connection is None:
            continue
        try:
            result = process_event(db, event, connection, llm)
        except Exception as e:
            db.rollback()
            outcome.failed += 1
            outcome.errors.append(str(e))
            logger.error(
                f"Failed to process inbound message: {e}",
                exc_info=True,
                extra={"context": {"tenant_id": str(event.tenant_id), "external_message_id": event.external_message_id}},
            )
            alert_error(
                "Inbound message processing failed",
                {"tenant_id": str(event.tenant_id), "external_message_id": event.external_message_id, "error": str(e)},
            )
            continue

        if result.duplicate:
            outcome.duplicates += 1
        elif result.stored:
            outcome.processed += 1
        if result.ai_replied:
            outcome.ai_replies += 1

    return outcome
