from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadflow.logging_config import get_logger
from leadflow.models import Message
from leadflow.schemas.inbound import InboundEvent

logger = get_logger("message_service")


def save_message(
    db: Session,
    conversation_id: UUID,
    tenant_id: UUID,
    sender_type: str,
    content: str,
    *,
    sender_id: Optional[UUID] = None,
    connection_id: Optional[UUID] = None,
    external_message_id: Optional[str] = None,
    message_metadata: Optional[dict] = None,
) -> Message:
    """Save message to database."""
    message = Message(
        conversation_id=conversation_id,
        tenant_id=tenant_id,
        sender_type=sender_type,
        sender_id=sender_id,
        content=content,
        connection_id=connection_id,
        external_message_id=external_message_id,
        message_metadata=message_metadata or {},
        created_at=datetime.now(timezone.utc),
    )
    db.add(message)
    db.flush()
    return message


def save_inbound(db: Session, conversation_id: UUID, event: InboundEvent) -> Optional[Message]:
    """Append the lead's message. Returns None when the external id was already stored.

    Duplicates are rejected by the (tenant_id, external_message_id) unique
    constraint rather than checked beforehand, so webhook retries are safe.
    """
    metadata = {
        "provider": event.provider.value,
        "content_kind": event.content_kind.value,
        "occurred_at": event.occurred_at.isoformat(),
    }
    if event.media_ref is not None:
        metadata["media"] = event.media_ref.model_dump(exclude_none=True, exclude={"base64_data"})

    try:
        with db.begin_nested():
            return save_message(
                db,
                conversation_id,
                event.tenant_id,
                "lead",
                event.text,
                connection_id=event.channel_connection_id,
                external_message_id=event.external_message_id,
                message_metadata=metadata,
            )
    except IntegrityError:
        logger.info(
            "Duplicate inbound message ignored",
            extra={
                "context": {
                    "tenant_id": str(event.tenant_id),
                    "external_message_id": event.external_message_id,
                }
            },
        )
        return None


def load_history(db: Session, conversation_id: UUID, limit: int = 20) -> List[Message]:
    """Last `limit` messages of a conversation, oldest first."""
    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))


def inbound_exists(db: Session, tenant_id: UUID, external_message_id: Optional[str]) -> bool:
    if not external_message_id:
        return False
    row = (
        db.query(Message.id)
        .filter(Message.tenant_id == tenant_id, Message.external_message_id == external_message_id)
        .first()
    )
    return row is not None
