from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class Provider(str, Enum):
    EVOLUTION = "evolution"
    OFFICIAL = "official"


class ContentKind(str, Enum):
    TEXT = "text"
    AUDIO = "audio"
    IMAGE = "image"
    DOCUMENT = "document"
    INTERACTIVE = "interactive"


class MediaRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: Optional[str] = None
    media_id: Optional[str] = None
    base64_data: Optional[str] = None
    mime_type: Optional[str] = None
    file_name: Optional[str] = None
    caption: Optional[str] = None
    size_bytes: Optional[int] = None
    seconds: Optional[int] = None


class InboundEvent(BaseModel):
    """Canonical inbound chat message, one per upstream message."""

    model_config = ConfigDict(frozen=True)

    tenant_id: UUID
    channel_connection_id: UUID
    provider: Provider
    external_message_id: str
    sender_phone: str
    sender_display_name: str
    content_kind: ContentKind
    text: str
    media_ref: Optional[MediaRef] = None
    occurred_at: datetime


class ConnectionUpdate(BaseModel):
    """Connection lifecycle update (state change or new QR code) from the provider."""

    model_config = ConfigDict(frozen=True)

    connection_id: UUID
    status: str
    phone_number: Optional[str] = None
    qr_code: Optional[str] = None
