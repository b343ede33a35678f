from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from leadflow.database import as_utc
from leadflow.models import TrainingStatus


class TrainingState(str, Enum):
    LEARNING = "learning"
    READY = "ready"
    ACTIVE = "active"
    PAUSED = "paused"


VALID_TRANSITIONS = {
    TrainingState.LEARNING: [TrainingState.READY],
    TrainingState.READY: [TrainingState.ACTIVE],
    TrainingState.ACTIVE: [TrainingState.PAUSED],
    TrainingState.PAUSED: [TrainingState.ACTIVE],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: TrainingState, to_state: TrainingState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: TrainingState, to_state: TrainingState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: TrainingState, to_state: TrainingState) -> TrainingState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def current_state(status: TrainingStatus) -> TrainingState:
    return TrainingState(status.status)


def elapsed_days(status: TrainingStatus, now: datetime) -> int:
    started_at = as_utc(status.started_at)
    if started_at is None:
        return 0
    return int((now - started_at).total_seconds() // 86400)


def confidence_from_counts(status: TrainingStatus) -> int:
    return min(100, (status.faqs_detected or 0) * 5 + (status.response_patterns_learned or 0) * 3)


def evaluate_readiness(status: TrainingStatus, now: Optional[datetime] = None) -> bool:
    """Move learning -> ready once both the time and message thresholds are met.

    Returns True when the transition fired.
    """
    if status.status != TrainingState.LEARNING.value:
        return False

    now = now or datetime.now(timezone.utc)
    meets_time = elapsed_days(status, now) >= (status.min_days_required or 0)
    meets_messages = (status.messages_analyzed or 0) >= (status.min_messages_required or 0)
    if not (meets_time and meets_messages):
        return False

    status.status = transition(TrainingState.LEARNING, TrainingState.READY).value
    status.ready_at = now
    status.confidence_score = confidence_from_counts(status)
    status.updated_at = now
    return True


def approve(status: TrainingStatus, now: Optional[datetime] = None) -> TrainingStatus:
    """Human approval: ready -> active."""
    now = now or datetime.now(timezone.utc)
    if current_state(status) != TrainingState.READY:
        raise InvalidTransitionError(current_state(status), TrainingState.ACTIVE)
    status.status = transition(TrainingState.READY, TrainingState.ACTIVE).value
    status.activated_at = now
    status.updated_at = now
    return status


def pause(status: TrainingStatus, now: Optional[datetime] = None) -> TrainingStatus:
    """active -> paused."""
    now = now or datetime.now(timezone.utc)
    status.status = transition(current_state(status), TrainingState.PAUSED).value
    status.paused_at = now
    status.updated_at = now
    return status


def resume(status: TrainingStatus, now: Optional[datetime] = None) -> TrainingStatus:
    """paused -> active."""
    now = now or datetime.now(timezone.utc)
    if current_state(status) != TrainingState.PAUSED:
        raise InvalidTransitionError(current_state(status), TrainingState.ACTIVE)
    status.status = transition(TrainingState.PAUSED, TrainingState.ACTIVE).value
    status.paused_at = None
    status.updated_at = now
    return status
