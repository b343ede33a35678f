"""Fixed-window request throttle, one counter row per (tenant, operation).

The read-decide-write below is not serialized: two concurrent requests can
read the same count and both be admitted. Over-admission within a window is
accepted. Storage errors fail open so the chat channel stays available; they
raise an ops alert because a storage outage silently disables throttling.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from leadflow.database import as_utc
from leadflow.logging_config import get_logger
from leadflow.models import RateLimitCounter
from leadflow.services.alert_service import alert_warning

logger = get_logger("rate_limit_service")

DEFAULT_MAX_REQUESTS = 30
DEFAULT_WINDOW_MS = 60_000


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after: Optional[int] = None
    failed_open: bool = False


def _fail_open(tenant_id: UUID, operation: str, max_requests: int, now: datetime, window: timedelta, error: Exception):
    logger.warning(
        "Rate limit check failed, allowing request",
        extra={"context": {"tenant_id": str(tenant_id), "operation": operation, "error": str(error)}},
    )
    alert_warning(
        "Rate limiter failing open",
        {"tenant_id": str(tenant_id), "operation": operation, "error": str(error)[:200]},
    )
    return RateLimitResult(allowed=True, remaining=max_requests, reset_at=now + window, failed_open=True)


def _load_counter(db: Session, tenant_id: UUID, operation: str) -> Optional[RateLimitCounter]:
    return (
        db.query(RateLimitCounter)
        .filter(RateLimitCounter.tenant_id == tenant_id, RateLimitCounter.operation == operation)
        .first()
    )


def _insert_counter(db: Session, tenant_id: UUID, operation: str, now: datetime, reset_at: datetime) -> bool:
    """Insert the first counter of a window. False when a concurrent request inserted it first."""
    try:
        with db.begin_nested():
            db.add(
                RateLimitCounter(
                    tenant_id=tenant_id,
                    operation=operation,
                    window_start=now,
                    reset_at=reset_at,
                    request_count=1,
                )
            )
            db.flush()
    except IntegrityError:
        logger.info(
            "Rate limit counter created concurrently, re-reading",
            extra={"context": {"tenant_id": str(tenant_id), "operation": operation}},
        )
        return False
    return True


def check_rate_limit(
    db: Session,
    tenant_id: UUID,
    operation: str,
    max_requests: int = DEFAULT_MAX_REQUESTS,
    window_ms: int = DEFAULT_WINDOW_MS,
    now: Optional[datetime] = None,
) -> RateLimitResult:
    now = now or datetime.now(timezone.utc)
    window = timedelta(milliseconds=window_ms)

    try:
        with db.begin_nested():
            counter = _load_counter(db, tenant_id, operation)

            if counter is None:
                reset_at = now + window
                if _insert_counter(db, tenant_id, operation, now, reset_at):
                    return RateLimitResult(allowed=True, remaining=max_requests - 1, reset_at=reset_at)
                counter = _load_counter(db, tenant_id, operation)
                if counter is None:
                    return RateLimitResult(allowed=True, remaining=max_requests - 1, reset_at=reset_at)

            reset_at = as_utc(counter.reset_at) or now
            if now > reset_at:
                new_reset_at = now + window
                counter.request_count = 1
                counter.window_start = now
                counter.reset_at = new_reset_at
                db.flush()
                return RateLimitResult(allowed=True, remaining=max_requests - 1, reset_at=new_reset_at)

            count = counter.request_count or 0
            if count >= max_requests:
                retry_after = max(1, math.ceil((reset_at - now).total_seconds()))
                return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at, retry_after=retry_after)

            counter.request_count = count + 1
            db.flush()
            return RateLimitResult(allowed=True, remaining=max_requests - count - 1, reset_at=reset_at)
    except SQLAlchemyError as exc:
        return _fail_open(tenant_id, operation, max_requests, now, window, exc)
