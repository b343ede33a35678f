"""Dashboard notifications, queued during processing and written after commit."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadflow.logging_config import get_logger
from leadflow.models import Notification

logger = get_logger("notification_service")

PREVIEW_LENGTH = 100


def preview(text: Optional[str], length: int = PREVIEW_LENGTH) -> str:
    text = text or ""
    return text[:length] + "..." if len(text) > length else text


@dataclass
class NotificationEvent:
    tenant_id: UUID
    type: str
    title: str
    description: Optional[str] = None
    priority: str = "normal"
    lead_id: Optional[UUID] = None
    user_id: Optional[UUID] = None


def create_notification(db: Session, event: NotificationEvent) -> Notification:
    notification = Notification(
        tenant_id=event.tenant_id,
        user_id=event.user_id,
        lead_id=event.lead_id,
        type=event.type,
        title=event.title,
        description=event.description,
        priority=event.priority,
        created_at=datetime.now(timezone.utc),
    )
    db.add(notification)
    return notification


@dataclass
class PostCommitEvents:
    """Side effects collected while a message is processed.

    Nothing here touches the database until `flush` is called, which the
    caller does only after the primary write is committed. A failing
    notification therefore never rolls back a stored message.
    """

    notifications: List[NotificationEvent] = field(default_factory=list)
    callbacks: List[Callable[[], None]] = field(default_factory=list)

    def notify(self, event: NotificationEvent) -> None:
        self.notifications.append(event)

    def after_commit(self, callback: Callable[[], None]) -> None:
        self.callbacks.append(callback)

    def __len__(self) -> int:
        return len(self.notifications) + len(self.callbacks)

    def flush(self, db: Session) -> int:
        """Write queued notifications in their own transaction, then run callbacks."""
        written = 0
        if self.notifications:
            try:
                for event in self.notifications:
                    create_notification(db, event)
                db.commit()
                written = len(self.notifications)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to write notifications: {e}")

        for callback in self.callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Post-commit callback failed: {e}")

        self.notifications.clear()
        self.callbacks.clear()
        return written


def new_message_event(tenant_id: UUID, lead_id: UUID, sender_name: str, content: str, user_id=None):
    return NotificationEvent(
        tenant_id=tenant_id,
        type="new_message",
        title=f"New message from {sender_name}",
        description=preview(content),
        priority="high",
        lead_id=lead_id,
        user_id=user_id,
    )


def ai_response_event(tenant_id: UUID, lead_id: UUID, lead_name: str, reply: str):
    return NotificationEvent(
        tenant_id=tenant_id,
        type="ai_response",
        title=f"AI replied to {lead_name}",
        description=preview(reply),
        priority="low",
        lead_id=lead_id,
    )


def hot_lead_event(tenant_id: UUID, lead_id: UUID, lead_name: str, score: int, reason: Optional[str] = None):
    return NotificationEvent(
        tenant_id=tenant_id,
        type="hot_lead",
        title=f"Hot lead: {lead_name} ({score} points)",
        description=preview(reason) if reason else None,
        priority="high",
        lead_id=lead_id,
    )


def api_health_event(tenant_id: UUID, connection_name: str, error: Optional[str]):
    return NotificationEvent(
        tenant_id=tenant_id,
        type="api_health",
        title=f"WhatsApp connection down: {connection_name}",
        description=preview(error) if error else "Connection is not responding",
        priority="high",
    )
