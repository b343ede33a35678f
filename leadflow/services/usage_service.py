"""Monthly AI message quota per tenant, keyed by subscription plan."""

import calendar
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadflow.logging_config import get_logger
from leadflow.models import Subscription, UsageCounter
from leadflow.services.alert_service import alert_warning

logger = get_logger("usage_service")

DEFAULT_PLAN = "basic"
PLAN_LIMITS = {
    "basic": 50,
    "professional": 500,
    "premium": 999999,
}
TOKENS_PER_CHAR = 0.3


@dataclass
class QuotaResult:
    allowed: bool
    plan: str = DEFAULT_PLAN
    limit: int = PLAN_LIMITS[DEFAULT_PLAN]
    used: int = 0
    error: Optional[str] = None


def month_bounds(now: datetime) -> tuple[datetime, datetime]:
    """First and last instant of the calendar month containing `now` (UTC)."""
    now = now.astimezone(timezone.utc)
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    last_day = calendar.monthrange(now.year, now.month)[1]
    end = datetime(now.year, now.month, last_day, 23, 59, 59, 999999, tzinfo=timezone.utc)
    return start, end


def estimate_tokens(input_text: str, output_text: str) -> int:
    """Rough token count from character length; used for dashboards, not billing."""
    return math.ceil((len(input_text or "") + len(output_text or "")) * TOKENS_PER_CHAR)


def get_plan(db: Session, tenant_id: UUID) -> str:
    try:
        subscription = db.query(Subscription).filter(Subscription.tenant_id == tenant_id).first()
    except SQLAlchemyError as exc:
        logger.warning(f"Error fetching subscription for {tenant_id}: {exc}")
        return DEFAULT_PLAN
    plan = (subscription.plan if subscription else None) or DEFAULT_PLAN
    return plan if plan in PLAN_LIMITS else DEFAULT_PLAN


def _current_row(db: Session, tenant_id: UUID, period_start: datetime) -> Optional[UsageCounter]:
    return (
        db.query(UsageCounter)
        .filter(UsageCounter.tenant_id == tenant_id, UsageCounter.period_start == period_start)
        .first()
    )


def check_quota(db: Session, tenant_id: UUID, now: Optional[datetime] = None) -> QuotaResult:
    now = now or datetime.now(timezone.utc)
    plan = get_plan(db, tenant_id)
    limit = PLAN_LIMITS[plan]
    period_start, _ = month_bounds(now)

    try:
        row = _current_row(db, tenant_id, period_start)
    except SQLAlchemyError as exc:
        logger.warning(
            "Usage read failed, allowing request",
            extra={"context": {"tenant_id": str(tenant_id), "error": str(exc)}},
        )
        alert_warning("Usage meter failing open", {"tenant_id": str(tenant_id), "error": str(exc)[:200]})
        return QuotaResult(allowed=True, plan=plan, limit=limit)

    used = (row.message_count if row else 0) or 0
    if used >= limit:
        return QuotaResult(
            allowed=False,
            plan=plan,
            limit=limit,
            used=used,
            error=f"AI message limit reached for the {plan} plan ({used}/{limit}). Upgrade to continue.",
        )
    return QuotaResult(allowed=True, plan=plan, limit=limit, used=used)


def increment_usage(db: Session, tenant_id: UUID, tokens: int = 0, now: Optional[datetime] = None) -> UsageCounter:
    """Add one message and `tokens` to the current month's row, creating it if needed.

    Read-then-write without a lock; concurrent increments may lose an update.
    """
    now = now or datetime.now(timezone.utc)
    period_start, period_end = month_bounds(now)

    row = _current_row(db, tenant_id, period_start)
    if row:
        row.message_count = (row.message_count or 0) + 1
        row.token_count = (row.token_count or 0) + tokens
        row.updated_at = now
    else:
        row = UsageCounter(
            tenant_id=tenant_id,
            period_start=period_start,
            period_end=period_end,
            message_count=1,
            token_count=tokens,
            updated_at=now,
        )
        db.add(row)
    db.flush()
    return row
