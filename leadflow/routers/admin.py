"""Admin endpoints: training lifecycle and connection health checks."""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from leadflow.config import settings
from leadflow.database import get_db
from leadflow.logging_config import get_logger
from leadflow.services.eligibility_service import load_training_status
from leadflow.services.health_service import run_health_sweep
from leadflow.services.notification_service import PostCommitEvents
from leadflow.services.training_state import InvalidTransitionError, approve, pause, resume

logger = get_logger("admin")

router = APIRouter(prefix="/admin", tags=["admin"])

TRAINING_ACTIONS = {
    "approve": approve,
    "pause": pause,
    "resume": resume,
}


class TrainingStatusResponse(BaseModel):
    tenant_id: UUID
    status: str
    messages_analyzed: int
    confidence_score: float
    ready_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None


class HealthCheckItem(BaseModel):
    connection_id: UUID
    provider: str
    status: str
    response_time_ms: int
    error_message: Optional[str] = None


class HealthSweepResponse(BaseModel):
    tenant_id: UUID
    checked: int
    down: int
    results: list[HealthCheckItem]


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


@router.post("/training/{tenant_id}/{action}", response_model=TrainingStatusResponse)
def change_training_state(
    tenant_id: UUID,
    action: str,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Approve, pause or resume the tenant's AI."""
    _require_admin_token(x_admin_token)
    handler = TRAINING_ACTIONS.get(action)
    if handler is None:
        raise HTTPException(status_code=404, detail=f"Unknown action '{action}'")

    training = load_training_status(db, tenant_id)
    if training is None:
        raise HTTPException(status_code=404, detail="Training status not found")

    previous = training.status
    try:
        handler(training, datetime.now(timezone.utc))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    db.commit()

    logger.info(
        "Training state changed",
        extra={"context": {"tenant_id": str(tenant_id), "from": previous, "to": training.status}},
    )
    return TrainingStatusResponse(
        tenant_id=tenant_id,
        status=training.status,
        messages_analyzed=training.messages_analyzed or 0,
        confidence_score=float(training.confidence_score or 0),
        ready_at=training.ready_at,
        activated_at=training.activated_at,
        paused_at=training.paused_at,
    )


@router.post("/health-check/{tenant_id}", response_model=HealthSweepResponse)
def health_check(
    tenant_id: UUID,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    events = PostCommitEvents()
    results = run_health_sweep(db, tenant_id, events=events)
    db.commit()
    events.flush(db)

    return HealthSweepResponse(
        tenant_id=tenant_id,
        checked=len(results),
        down=sum(1 for r in results if r.status == "down"),
        results=[
            HealthCheckItem(
                connection_id=r.connection_id,
                provider=r.provider,
                status=r.status,
                response_time_ms=r.response_time_ms,
                error_message=r.error_message,
            )
            for r in results
        ],
    )
