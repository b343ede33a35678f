import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from leadflow.config import settings
from leadflow.logging_config import get_logger
from leadflow.models import ChannelConnection, ConnectionHealthCheck
from leadflow.schemas.inbound import Provider
from leadflow.services.notification_service import PostCommitEvents, api_health_event

logger = get_logger("health_service")

EVOLUTION_DEGRADED_MS = 5000
OFFICIAL_DEGRADED_MS = 3000


@dataclass
class HealthCheckResult:
    connection_id: UUID
    provider: str
    status: str  # healthy, degraded, down, unknown
    response_time_ms: int = 0
    error_message: Optional[str] = None


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _probe(
    connection: ChannelConnection,
    url: str,
    headers: dict,
    degraded_ms: int,
) -> HealthCheckResult:
    timeout = settings.health_check_timeout_seconds
    started = time.monotonic()
    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.get(url, headers=headers)
    except httpx.TimeoutException:
        return HealthCheckResult(
            connection.id, connection.provider, "down", _elapsed_ms(started), f"Timeout ({int(timeout)}s)"
        )
    except httpx.HTTPError as e:
        return HealthCheckResult(connection.id, connection.provider, "down", _elapsed_ms(started), str(e))

    elapsed = _elapsed_ms(started)
    if response.status_code != 200:
        error = f"HTTP {response.status_code}"
        try:
            error = (response.json().get("error") or {}).get("message") or error
        except (ValueError, AttributeError):
            pass
        return HealthCheckResult(connection.id, connection.provider, "down", elapsed, error)

    if elapsed > degraded_ms:
        return HealthCheckResult(connection.id, connection.provider, "degraded", elapsed, "High response time")
    return HealthCheckResult(connection.id, connection.provider, "healthy", elapsed)


def check_evolution(connection: ChannelConnection) -> HealthCheckResult:
    api_url = (connection.api_url or settings.evolution_api_url or "").rstrip("/")
    api_key = connection.api_key or settings.evolution_api_key
    if not api_url or not api_key:
        return HealthCheckResult(connection.id, connection.provider, "unknown", 0, "API not configured")

    if connection.instance_name:
        url = f"{api_url}/instance/connectionState/{connection.instance_name}"
    else:
        url = f"{api_url}/instance/fetchInstances"
    return _probe(connection, url, {"apikey": api_key}, EVOLUTION_DEGRADED_MS)


def check_official(connection: ChannelConnection) -> HealthCheckResult:
    phone_number_id = connection.phone_number_id or connection.instance_name
    if not connection.access_token or not phone_number_id:
        return HealthCheckResult(connection.id, connection.provider, "unknown", 0, "API not configured")

    return _probe(
        connection,
        f"{settings.graph_api_url}/{phone_number_id}",
        {"Authorization": f"Bearer {connection.access_token}"},
        OFFICIAL_DEGRADED_MS,
    )


def check_connection(connection: ChannelConnection) -> HealthCheckResult:
    if connection.provider == Provider.OFFICIAL.value:
        return check_official(connection)
    return check_evolution(connection)


def save_result(db: Session, tenant_id: UUID, result: HealthCheckResult, now: datetime) -> ConnectionHealthCheck:
    row = db.query(ConnectionHealthCheck).filter(ConnectionHealthCheck.connection_id == result.connection_id).first()
    if row is None:
        row = ConnectionHealthCheck(connection_id=result.connection_id, tenant_id=tenant_id)
        db.add(row)
    row.provider = result.provider
    row.status = result.status
    row.response_time_ms = result.response_time_ms
    row.error_message = result.error_message
    row.last_check_at = now
    return row


def run_health_sweep(db: Session, tenant_id: UUID, events: Optional[PostCommitEvents] = None) -> List[HealthCheckResult]:
    """Probe every connection of the tenant one after another and record the results."""
    connections = db.query(ChannelConnection).filter(ChannelConnection.tenant_id == tenant_id).all()
    results: List[HealthCheckResult] = []

    for connection in connections:
        result = check_connection(connection)
        now = datetime.now(timezone.utc)
        save_result(db, tenant_id, result, now)
        results.append(result)

        if result.status == "down":
            logger.warning(
                "API down",
                extra={"context": {"connection_id": str(connection.id), "error": result.error_message}},
            )
            if events is not None:
                events.notify(api_health_event(tenant_id, connection.name or connection.instance_name or "", result.error_message))

    db.flush()
    logger.info(
        "Health sweep complete",
        extra={
            "context": {
                "tenant_id": str(tenant_id),
                "total": len(results),
                "down": sum(1 for r in results if r.status == "down"),
            }
        },
    )
    return results
