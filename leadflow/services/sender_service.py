from typing import Optional

import httpx

from leadflow.config import settings
from leadflow.logging_config import get_logger
from leadflow.models import ChannelConnection
from leadflow.schemas.inbound import Provider
from leadflow.services.alert_service import alert_error
from leadflow.services.result import Result

logger = get_logger("sender_service")


def _evolution_request(connection: ChannelConnection, to: str, text: str) -> tuple[str, dict, dict]:
    base_url = (connection.api_url or settings.evolution_api_url or "").rstrip("/")
    if not base_url or not connection.instance_name:
        raise ValueError("Evolution connection has no api_url or instance_name")
    api_key = connection.api_key or settings.evolution_api_key or ""
    return (
        f"{base_url}/message/sendText/{connection.instance_name}",
        {"apikey": api_key, "Content-Type": "application/json"},
        {"number": to, "text": text},
    )


def _official_request(connection: ChannelConnection, to: str, text: str) -> tuple[str, dict, dict]:
    phone_number_id = connection.phone_number_id or connection.instance_name
    if not phone_number_id or not connection.access_token:
        raise ValueError("Official connection has no phone_number_id or access_token")
    return (
        f"{settings.graph_api_url}/{phone_number_id}/messages",
        {"Authorization": f"Bearer {connection.access_token}", "Content-Type": "application/json"},
        {"messaging_product": "whatsapp", "to": to, "type": "text", "text": {"body": text}},
    )


def _message_id(provider: str, data: dict) -> Optional[str]:
    if provider == Provider.OFFICIAL.value:
        messages = data.get("messages") or []
        return messages[0].get("id") if messages else None
    return (data.get("key") or {}).get("id")


def send_text(connection: ChannelConnection, to: str, text: str) -> Result[Optional[str]]:
    """Send a text message through the connection's provider.

    Returns the provider message id on success. Failures are logged and
    reported, never raised.
    """
    if not text:
        return Result.failure("Empty message", "invalid_request")

    try:
        if connection.provider == Provider.OFFICIAL.value:
            url, headers, body = _official_request(connection, to, text)
        else:
            url, headers, body = _evolution_request(connection, to, text)
    except ValueError as e:
        logger.error(f"Cannot send message: {e}", extra={"context": {"connection_id": str(connection.id)}})
        return Result.failure(str(e), "not_configured")

    try:
        with httpx.Client(timeout=settings.send_timeout_seconds) as client:
            response = client.post(url, headers=headers, json=body)
    except httpx.HTTPError as e:
        logger.error(f"Error sending WhatsApp message: {e}")
        alert_error("WhatsApp send failed", {"connection_id": str(connection.id), "error": str(e)})
        return Result.failure(str(e), "send_failed")

    logger.info(
        f"Send response: status={response.status_code}, provider={connection.provider}, body={response.text[:200]}"
    )
    if response.status_code not in (200, 201):
        alert_error(
            "WhatsApp send failed",
            {"connection_id": str(connection.id), "status": response.status_code},
        )
        return Result.failure(f"Provider returned {response.status_code}", "send_failed")

    try:
        data = response.json()
    except ValueError:
        data = {}
    return Result.success(_message_id(connection.provider, data if isinstance(data, dict) else {}))
