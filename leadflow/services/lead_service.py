from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadflow.config import settings
from leadflow.logging_config import get_logger
from leadflow.models import Conversation, Lead

logger = get_logger("lead_service")


def find_lead(db: Session, tenant_id: UUID, phone: str) -> Optional[Lead]:
    return db.query(Lead).filter(Lead.tenant_id == tenant_id, Lead.phone == phone).first()


def resolve_lead(db: Session, tenant_id: UUID, phone: str, display_name: Optional[str] = None) -> Lead:
    """Find lead by (tenant, phone) or create it.

    Two webhooks for the same new phone can race here. The insert runs in a
    savepoint; a unique violation means the other request won, so re-fetch.
    """
    lead = find_lead(db, tenant_id, phone)
    if lead:
        return lead

    now = datetime.now(timezone.utc)
    candidate = Lead(
        tenant_id=tenant_id,
        phone=phone,
        display_name=display_name or phone,
        source="whatsapp",
        status="new",
        temperature="warm",
        message_count=0,
        created_at=now,
        updated_at=now,
    )
    try:
        with db.begin_nested():
            db.add(candidate)
            db.flush()
    except IntegrityError:
        logger.info("Lead created concurrently, re-fetching", extra={"context": {"phone": phone}})
        lead = find_lead(db, tenant_id, phone)
        if lead is None:
            raise
        return lead

    logger.info(
        "New lead created",
        extra={"context": {"lead_id": str(candidate.id), "tenant_id": str(tenant_id)}},
    )
    return candidate


def latest_conversation(db: Session, lead: Lead) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(Conversation.tenant_id == lead.tenant_id, Conversation.lead_id == lead.id)
        .order_by(Conversation.created_at.desc())
        .first()
    )


def resolve_conversation(db: Session, lead: Lead, reuse_closed: Optional[bool] = None) -> Conversation:
    """Return the lead's most recent conversation, creating one only if needed.

    With ``reuse_closed`` (the default, from settings) the latest conversation is
    reused whatever its status, so a lead keeps one long-lived thread. When it is
    off, a closed latest conversation starts a fresh ``open`` one.
    """
    if reuse_closed is None:
        reuse_closed = settings.reuse_closed_conversations

    conversation = latest_conversation(db, lead)
    if conversation and (reuse_closed or conversation.status != "closed"):
        return conversation

    now = datetime.now(timezone.utc)
    conversation = Conversation(
        tenant_id=lead.tenant_id,
        lead_id=lead.id,
        status="open",
        message_count=0,
        created_at=now,
        updated_at=now,
    )
    db.add(conversation)
    db.flush()
    logger.info(
        "New conversation created",
        extra={"context": {"conversation_id": str(conversation.id), "lead_id": str(lead.id)}},
    )
    return conversation


def touch_lead(lead: Lead, content: str, now: Optional[datetime] = None) -> Lead:
    now = now or datetime.now(timezone.utc)
    lead.last_message = content
    lead.last_message_at = now
    lead.message_count = (lead.message_count or 0) + 1
    lead.updated_at = now
    return lead


def touch_conversation(conversation: Conversation, now: Optional[datetime] = None, count: int = 1) -> Conversation:
    conversation.message_count = (conversation.message_count or 0) + count
    conversation.updated_at = now or datetime.now(timezone.utc)
    return conversation
