"""Decide whether an automated reply may be generated for an inbound message."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from leadflow.logging_config import get_logger
from leadflow.models import AISettings, TrainingStatus
from leadflow.schemas.tenant_config import TenantAIConfig
from leadflow.services.training_state import TrainingState

logger = get_logger("eligibility_service")

AI_NOT_ACTIVE = "ai_not_active"
WHATSAPP_NOT_LINKED = "whatsapp_not_linked"
AI_DISABLED = "ai_disabled"
OUTSIDE_HOURS = "outside_hours"
TRANSFER_REQUESTED = "transfer_requested"

DENIAL_REASONS = (AI_NOT_ACTIVE, WHATSAPP_NOT_LINKED, AI_DISABLED, OUTSIDE_HOURS, TRANSFER_REQUESTED)

_NOT_ACTIVE_MESSAGES = {
    TrainingState.LEARNING.value: "AI is in its learning period",
    TrainingState.READY.value: "AI is ready and waiting for activation",
    TrainingState.PAUSED.value: "AI is paused",
}

_CONFIG_FIELDS = (
    "is_enabled",
    "ai_name",
    "company_name",
    "system_prompt",
    "blocked_topics",
    "transfer_keywords",
    "active_hours_start",
    "active_hours_end",
    "timezone",
    "max_context_messages",
)


@dataclass(frozen=True)
class GateDecision:
    eligible: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    handoff: bool = False

    @classmethod
    def allow(cls) -> "GateDecision":
        return cls(eligible=True)

    @classmethod
    def deny(cls, reason: str, message: Optional[str] = None, handoff: bool = False) -> "GateDecision":
        return cls(eligible=False, reason=reason, message=message, handoff=handoff)


def load_tenant_config(db: Session, tenant_id: UUID) -> TenantAIConfig:
    """Read the tenant's AI settings row into the typed config (defaults if absent)."""
    row = db.query(AISettings).filter(AISettings.tenant_id == tenant_id).first()
    if row is None:
        return TenantAIConfig()
    values = {name: getattr(row, name) for name in _CONFIG_FIELDS}
    return TenantAIConfig(**{name: value for name, value in values.items() if value is not None})


def load_training_status(db: Session, tenant_id: UUID) -> Optional[TrainingStatus]:
    return db.query(TrainingStatus).filter(TrainingStatus.tenant_id == tenant_id).first()


def _minutes(value: str) -> int:
    hours, minutes = value.split(":")[:2]
    return int(hours) * 60 + int(minutes)


def is_within_active_hours(config: TenantAIConfig, now: Optional[datetime] = None) -> bool:
    """Inclusive window check in the tenant's timezone; windows may wrap past midnight.

    No window, an unknown timezone or an unparsable bound all admit.
    """
    if not config.has_active_hours:
        return True
    if not config.timezone:
        logger.warning("Unknown timezone in AI settings, skipping active hours check")
        return True

    now = now or datetime.now(timezone.utc)
    try:
        local = now.astimezone(ZoneInfo(config.timezone))
        start = _minutes(config.active_hours_start)
        end = _minutes(config.active_hours_end)
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.warning(f"Error checking active hours: {e}")
        return True

    current = local.hour * 60 + local.minute
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def contains_transfer_keyword(text: Optional[str], keywords: Iterable[str]) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(keyword and keyword.lower() in lowered for keyword in keywords)


def evaluate_gate(
    training: Optional[TrainingStatus],
    config: TenantAIConfig,
    connection_id: Optional[UUID] = None,
    message_text: Optional[str] = None,
    now: Optional[datetime] = None,
) -> GateDecision:
    """Run the checks in order and stop at the first denial.

    Order matters: nothing past the training-state check is looked at unless
    the tenant's AI is active.
    """
    if training is None or training.status != TrainingState.ACTIVE.value:
        status = training.status if training is not None else None
        return GateDecision.deny(AI_NOT_ACTIVE, _NOT_ACTIVE_MESSAGES.get(status, "AI is not configured"))

    linked = training.linked_connection_id
    if connection_id and linked and str(connection_id) != str(linked):
        return GateDecision.deny(WHATSAPP_NOT_LINKED, "This WhatsApp number is not linked to the AI")

    if not config.is_enabled:
        return GateDecision.deny(AI_DISABLED)

    if not is_within_active_hours(config, now):
        return GateDecision.deny(OUTSIDE_HOURS)

    if contains_transfer_keyword(message_text, config.transfer_keywords):
        return GateDecision.deny(TRANSFER_REQUESTED, "Customer asked for a human", handoff=True)

    return GateDecision.allow()


def check_eligibility(
    db: Session,
    tenant_id: UUID,
    connection_id: Optional[UUID] = None,
    message_text: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[GateDecision, TenantAIConfig]:
    """Load training status and settings for the tenant, then evaluate the gate."""
    config = load_tenant_config(db, tenant_id)
    decision = evaluate_gate(load_training_status(db, tenant_id), config, connection_id, message_text, now)
    if not decision.eligible:
        logger.info(
            "AI reply not eligible",
            extra={"context": {"tenant_id": str(tenant_id), "reason": decision.reason}},
        )
    return decision, config
