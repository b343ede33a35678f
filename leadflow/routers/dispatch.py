from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from leadflow.database import get_db
from leadflow.logging_config import get_logger
from leadflow.schemas.dispatch import DispatchRequest, DispatchResponse, LearnRequest, LearnResponse
from leadflow.services.analysis_service import conversation_messages
from leadflow.services.dispatch_service import dispatch
from leadflow.services.learning_service import learn_from_agent_reply
from leadflow.services.llm import LLMProvider, get_llm_provider
from leadflow.services.notification_service import PostCommitEvents

logger = get_logger("dispatch")

router = APIRouter(prefix="/ai", tags=["ai"])

STATUS_BY_REASON = {
    "quota_exceeded": 403,
    "forbidden": 403,
    "rate_limited": 429,
    "not_found": 404,
    "invalid_request": 400,
}


def _user_id(value: Optional[str]) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid X-User-Id header")


@router.post("/dispatch", response_model=DispatchResponse)
def dispatch_task(
    request: DispatchRequest,
    db: Session = Depends(get_db),
    llm: LLMProvider = Depends(get_llm_provider),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
):
    """Run one AI task for a tenant. Gate denials come back as 200 with success=false."""
    events = PostCommitEvents()
    response = dispatch(db, request, llm, user_id=_user_id(x_user_id), events=events)
    db.commit()
    events.flush(db)

    status_code = 200 if response.success else STATUS_BY_REASON.get(response.reason, 200)
    if status_code == 200:
        return response

    headers = {"Retry-After": str(response.retry_after)} if response.retry_after else None
    return JSONResponse(status_code=status_code, content=response.model_dump(mode="json"), headers=headers)


@router.post("/learn", response_model=LearnResponse)
def learn(
    request: LearnRequest,
    db: Session = Depends(get_db),
    llm: LLMProvider = Depends(get_llm_provider),
):
    """Feed a human agent's reply to the learning extractor."""
    if not request.content.strip():
        raise HTTPException(status_code=400, detail="content is required")

    history = conversation_messages(db, request.conversation_id) if request.conversation_id else None
    outcome = learn_from_agent_reply(
        db,
        request.tenant_id,
        request.conversation_id,
        request.message_id,
        request.content,
        llm,
        history=history,
    )
    db.commit()
    logger.info(
        "Agent reply analyzed",
        extra={"context": {"tenant_id": str(request.tenant_id), "learned": outcome.learned, "reason": outcome.reason}},
    )
    return LearnResponse(
        learned=outcome.learned,
        reason=outcome.reason,
        content_type=outcome.content_type,
        became_ready=outcome.became_ready,
    )
