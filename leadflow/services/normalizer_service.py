"""Parse Evolution API and WhatsApp Cloud API webhooks into InboundEvent objects."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from leadflow.config import settings
from leadflow.logging_config import get_logger
from leadflow.models import ChannelConnection
from leadflow.schemas.inbound import ConnectionUpdate, ContentKind, InboundEvent, MediaRef, Provider

logger = get_logger("normalizer_service")

OFFICIAL_OBJECT = "whatsapp_business_account"

AUDIO_PLACEHOLDER = "[Audio received]"
IMAGE_PLACEHOLDER = "[Image received]"
EMPTY_TEXT_PLACEHOLDER = "[Empty message]"

EVOLUTION_STATE_MAP = {
    "open": "connected",
    "connected": "connected",
    "connecting": "connecting",
    "close": "disconnected",
    "disconnected": "disconnected",
}

# Keys Evolution puts next to the real content inside `message`.
_EVOLUTION_META_KEYS = {"messageContextInfo", "base64", "mediaUrl", "senderKeyDistributionMessage"}


@dataclass
class NormalizeResult:
    kind: str  # events, ignored, status
    provider: Optional[Provider] = None
    events: list[InboundEvent] = field(default_factory=list)
    updates: list[ConnectionUpdate] = field(default_factory=list)
    reason: Optional[str] = None

    @classmethod
    def ignored(cls, reason: str, provider: Optional[Provider] = None) -> "NormalizeResult":
        return cls(kind="ignored", provider=provider, reason=reason)


def detect_provider(payload: Any) -> Optional[Provider]:
    if not isinstance(payload, dict):
        return None
    if payload.get("event") and payload.get("instance"):
        return Provider.EVOLUTION
    if payload.get("object") == OFFICIAL_OBJECT:
        return Provider.OFFICIAL
    return None


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> Optional[str]:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _parse_timestamp(value: Any) -> datetime:
    # Evolution sometimes sends protobuf Long objects: {"low": ..., "high": ..., "unsigned": ...}
    if isinstance(value, dict):
        value = value.get("low")
    seconds = _as_int(value)
    if seconds is None or seconds <= 0:
        return datetime.now(timezone.utc)
    if seconds > 10**12:
        seconds = seconds // 1000
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _event_name(value: Any) -> str:
    return str(value or "").strip().upper().replace(".", "_")


# --- lookups -----------------------------------------------------------------


def find_evolution_connection(db: Session, instance: str) -> Optional[ChannelConnection]:
    return (
        db.query(ChannelConnection)
        .filter(ChannelConnection.provider == Provider.EVOLUTION.value, ChannelConnection.instance_name == instance)
        .first()
    )


def find_official_connection(db: Session, phone_number_id: str) -> Optional[ChannelConnection]:
    return (
        db.query(ChannelConnection)
        .filter(
            ChannelConnection.provider == Provider.OFFICIAL.value,
            or_(
                ChannelConnection.phone_number_id == phone_number_id,
                ChannelConnection.instance_name == phone_number_id,
            ),
        )
        .first()
    )


# --- Evolution ---------------------------------------------------------------


def _evolution_content(message: dict) -> tuple[ContentKind, str, Optional[MediaRef]]:
    """Map one Evolution `message` object onto (kind, text, media)."""
    inline_base64 = _as_str(message.get("base64"))

    text = _as_str(message.get("conversation")) or _as_str(_as_dict(message.get("extendedTextMessage")).get("text"))
    if text:
        return ContentKind.TEXT, text, None

    if "audioMessage" in message:
        audio = _as_dict(message.get("audioMessage"))
        media = MediaRef(
            url=_as_str(audio.get("url")) or _as_str(message.get("mediaUrl")),
            base64_data=inline_base64,
            mime_type=_as_str(audio.get("mimetype")) or "audio/ogg",
            size_bytes=_as_int(audio.get("fileLength")),
            seconds=_as_int(audio.get("seconds")),
        )
        return ContentKind.AUDIO, AUDIO_PLACEHOLDER, media

    if "imageMessage" in message:
        image = _as_dict(message.get("imageMessage"))
        caption = _as_str(image.get("caption"))
        media = MediaRef(
            url=_as_str(image.get("url")) or _as_str(message.get("mediaUrl")),
            base64_data=inline_base64,
            mime_type=_as_str(image.get("mimetype")) or "image/jpeg",
            caption=caption,
            size_bytes=_as_int(image.get("fileLength")),
        )
        return ContentKind.IMAGE, caption or IMAGE_PLACEHOLDER, media

    if "documentMessage" in message:
        document = _as_dict(message.get("documentMessage"))
        name = _as_str(document.get("fileName")) or _as_str(document.get("title")) or "file"
        media = MediaRef(
            url=_as_str(document.get("url")),
            mime_type=_as_str(document.get("mimetype")),
            file_name=name,
            size_bytes=_as_int(document.get("fileLength")),
        )
        return ContentKind.DOCUMENT, f"[Document received: {name}]", media

    if "listResponseMessage" in message:
        reply = _as_dict(message.get("listResponseMessage"))
        selected = _as_str(_as_dict(reply.get("singleSelectReply")).get("selectedRowId"))
        return ContentKind.INTERACTIVE, _interactive_text(_as_str(reply.get("title")), selected), None

    if "buttonsResponseMessage" in message:
        reply = _as_dict(message.get("buttonsResponseMessage"))
        return (
            ContentKind.INTERACTIVE,
            _interactive_text(_as_str(reply.get("selectedDisplayText")), _as_str(reply.get("selectedButtonId"))),
            None,
        )

    if "templateButtonReplyMessage" in message:
        reply = _as_dict(message.get("templateButtonReplyMessage"))
        return (
            ContentKind.INTERACTIVE,
            _interactive_text(_as_str(reply.get("selectedDisplayText")), _as_str(reply.get("selectedId"))),
            None,
        )

    kinds = [key for key in message.keys() if key not in _EVOLUTION_META_KEYS]
    if not kinds:
        return ContentKind.TEXT, EMPTY_TEXT_PLACEHOLDER, None
    return ContentKind.TEXT, f"[Unsupported message: {kinds[0]}]", None


def _interactive_text(title: Optional[str], selected_id: Optional[str]) -> str:
    if title and selected_id and title != selected_id:
        return f"{title} ({selected_id})"
    return title or selected_id or "[Interactive reply]"


def parse_evolution_message(connection: ChannelConnection, item: Any) -> Optional[InboundEvent]:
    """Build an InboundEvent from one Evolution message, or None if it must be skipped."""
    item = _as_dict(item)
    key = _as_dict(item.get("key"))
    if not key:
        logger.warning("Evolution message without key, skipping")
        return None
    if key.get("fromMe"):
        logger.debug("Skipping outgoing message")
        return None

    remote_jid = _as_str(key.get("remoteJid"))
    external_id = _as_str(key.get("id"))
    if not remote_jid or not external_id:
        logger.warning("Evolution message without remoteJid or id, skipping")
        return None
    if remote_jid.endswith("@broadcast"):
        return None

    phone = remote_jid.split("@")[0]
    kind, text, media = _evolution_content(_as_dict(item.get("message")))

    return InboundEvent(
        tenant_id=connection.tenant_id,
        channel_connection_id=connection.id,
        provider=Provider.EVOLUTION,
        external_message_id=external_id,
        sender_phone=phone,
        sender_display_name=_as_str(item.get("pushName")) or phone,
        content_kind=kind,
        text=text or EMPTY_TEXT_PLACEHOLDER,
        media_ref=media,
        occurred_at=_parse_timestamp(item.get("messageTimestamp")),
    )


def _evolution_connection_update(connection: ChannelConnection, event: str, data: dict) -> Optional[ConnectionUpdate]:
    if event == "CONNECTION_UPDATE":
        state = _as_str(data.get("state")) or _as_str(data.get("status"))
        status = EVOLUTION_STATE_MAP.get((state or "").lower(), "disconnected")
        return ConnectionUpdate(
            connection_id=connection.id,
            status=status,
            phone_number=_as_str(data.get("phoneNumber")) or _as_str(data.get("wuid")),
        )

    qr_code = _as_str(_as_dict(data.get("qrcode")).get("base64")) or _as_str(data.get("base64"))
    if not qr_code:
        return None
    return ConnectionUpdate(connection_id=connection.id, status="qr_pending", qr_code=qr_code)


def _normalize_evolution(db: Session, payload: dict) -> NormalizeResult:
    event = _event_name(payload.get("event"))
    instance = _as_str(payload.get("instance"))
    data = payload.get("data")

    connection = find_evolution_connection(db, instance) if instance else None
    if not connection:
        logger.error("Connection not found for instance", extra={"context": {"instance": instance}})
        return NormalizeResult.ignored("connection_not_found", Provider.EVOLUTION)

    if event in ("CONNECTION_UPDATE", "QRCODE_UPDATED"):
        update = _evolution_connection_update(connection, event, _as_dict(data))
        if update is None:
            return NormalizeResult.ignored("qr_code_missing", Provider.EVOLUTION)
        return NormalizeResult(kind="status", provider=Provider.EVOLUTION, updates=[update])

    if event == "MESSAGES_UPSERT":
        if isinstance(data, dict) and isinstance(data.get("messages"), list):
            items = data["messages"]
        else:
            items = data if isinstance(data, list) else [data]

        events = [e for e in (parse_evolution_message(connection, item) for item in items) if e is not None]
        logger.info(
            "Evolution messages received",
            extra={"context": {"connection_id": str(connection.id), "received": len(items), "accepted": len(events)}},
        )
        if not events:
            return NormalizeResult.ignored("no_inbound_messages", Provider.EVOLUTION)
        return NormalizeResult(kind="events", provider=Provider.EVOLUTION, events=events)

    if event == "MESSAGES_UPDATE":
        return NormalizeResult(kind="status", provider=Provider.EVOLUTION)

    logger.debug(f"Unhandled Evolution event: {event}")
    return NormalizeResult.ignored("unhandled_event", Provider.EVOLUTION)


# --- Official Cloud API ------------------------------------------------------


def _official_media(message: dict, media_key: str, default_mime: Optional[str]) -> MediaRef:
    media = _as_dict(message.get(media_key))
    return MediaRef(
        media_id=_as_str(media.get("id")),
        url=_as_str(media.get("link")) or _as_str(media.get("url")),
        mime_type=_as_str(media.get("mime_type")) or default_mime,
        caption=_as_str(media.get("caption")),
        file_name=_as_str(media.get("filename")),
    )


def _official_content(message: dict) -> tuple[ContentKind, str, Optional[MediaRef]]:
    message_type = _as_str(message.get("type")) or "unknown"

    if message_type == "text":
        body = _as_str(_as_dict(message.get("text")).get("body"))
        return ContentKind.TEXT, body or EMPTY_TEXT_PLACEHOLDER, None

    if message_type == "interactive":
        interactive = _as_dict(message.get("interactive"))
        reply = _as_dict(interactive.get("list_reply")) or _as_dict(interactive.get("button_reply"))
        return ContentKind.INTERACTIVE, _interactive_text(_as_str(reply.get("title")), _as_str(reply.get("id"))), None

    if message_type == "button":
        button = _as_dict(message.get("button"))
        return ContentKind.INTERACTIVE, _interactive_text(_as_str(button.get("text")), _as_str(button.get("payload"))), None

    if message_type == "image":
        media = _official_media(message, "image", "image/jpeg")
        return ContentKind.IMAGE, media.caption or IMAGE_PLACEHOLDER, media

    if message_type in ("audio", "voice"):
        media = _official_media(message, message_type, "audio/ogg")
        return ContentKind.AUDIO, AUDIO_PLACEHOLDER, media

    if message_type == "document":
        media = _official_media(message, "document", None)
        name = media.file_name or "file"
        return ContentKind.DOCUMENT, f"[Document received: {name}]", media

    return ContentKind.TEXT, f"[Unsupported message: {message_type}]", None


def parse_official_message(
    connection: ChannelConnection,
    message: Any,
    display_name: Optional[str] = None,
) -> Optional[InboundEvent]:
    message = _as_dict(message)
    phone = _as_str(message.get("from"))
    external_id = _as_str(message.get("id"))
    if not phone or not external_id:
        logger.warning("Official message without sender or id, skipping")
        return None

    kind, text, media = _official_content(message)
    return InboundEvent(
        tenant_id=connection.tenant_id,
        channel_connection_id=connection.id,
        provider=Provider.OFFICIAL,
        external_message_id=external_id,
        sender_phone=phone,
        sender_display_name=display_name or phone,
        content_kind=kind,
        text=text,
        media_ref=media,
        occurred_at=_parse_timestamp(message.get("timestamp")),
    )


def _normalize_official(db: Session, payload: dict) -> NormalizeResult:
    entries = payload.get("entry")
    if not isinstance(entries, list):
        return NormalizeResult.ignored("malformed_payload", Provider.OFFICIAL)

    events: list[InboundEvent] = []
    saw_status = False

    for entry in entries:
        for change in _as_dict(entry).get("changes") or []:
            change = _as_dict(change)
            if change.get("field") != "messages":
                logger.debug(f"Skipping non-messages field: {change.get('field')}")
                continue

            value = _as_dict(change.get("value"))
            if value.get("statuses"):
                saw_status = True
            messages = value.get("messages")
            if not isinstance(messages, list) or not messages:
                continue

            phone_number_id = _as_str(_as_dict(value.get("metadata")).get("phone_number_id"))
            connection = find_official_connection(db, phone_number_id) if phone_number_id else None
            if not connection:
                logger.error(
                    "Connection not found for phone_number_id",
                    extra={"context": {"phone_number_id": phone_number_id}},
                )
                continue

            contacts = value.get("contacts") if isinstance(value.get("contacts"), list) else []
            display_name = _as_str(_as_dict(_as_dict(contacts[0]).get("profile")).get("name")) if contacts else None

            for message in messages:
                event = parse_official_message(connection, message, display_name)
                if event is not None:
                    events.append(event)

    if events:
        return NormalizeResult(kind="events", provider=Provider.OFFICIAL, events=events)
    if saw_status:
        return NormalizeResult(kind="status", provider=Provider.OFFICIAL)
    return NormalizeResult.ignored("no_messages", Provider.OFFICIAL)


# --- entry points ------------------------------------------------------------


def normalize(db: Session, payload: Any, provider: Optional[Provider] = None) -> NormalizeResult:
    """Normalize a raw webhook body.

    Never raises on malformed input: anything that does not match one of the
    two known shapes comes back as an ``ignored`` result.
    """
    detected = provider or detect_provider(payload)
    if detected is None:
        keys = list(payload.keys()) if isinstance(payload, dict) else type(payload).__name__
        logger.warning("Unknown webhook format", extra={"context": {"keys": keys}})
        return NormalizeResult.ignored("unknown_format")

    if not isinstance(payload, dict):
        return NormalizeResult.ignored("malformed_payload", detected)

    if detected == Provider.EVOLUTION:
        return _normalize_evolution(db, payload)
    return _normalize_official(db, payload)


def verify_challenge(db: Session, mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> Optional[str]:
    """Answer the Cloud API subscription handshake. Returns the challenge, or None to reject."""
    if mode != "subscribe" or not token or challenge is None:
        return None

    if settings.meta_verify_token and token == settings.meta_verify_token:
        return challenge

    connection = db.query(ChannelConnection).filter(ChannelConnection.verify_token == token).first()
    if connection:
        logger.info("Webhook verified for connection", extra={"context": {"connection_id": str(connection.id)}})
        return challenge

    return None
