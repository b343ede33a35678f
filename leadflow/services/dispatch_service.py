"""Route AI tasks, applying the eligibility gate to chat and suggest."""

from typing import Any, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from leadflow.logging_config import get_logger
from leadflow.schemas.dispatch import UNGATED_TASKS, DispatchRequest, DispatchResponse, TaskType
from leadflow.services.analysis_service import analyze_conversation, qualify_lead, suggest_replies
from leadflow.services.eligibility_service import check_eligibility
from leadflow.services.llm import LLMProvider
from leadflow.services.notification_service import PostCommitEvents
from leadflow.services.response_service import ReplyRequest, generate_reply
from leadflow.services.result import Result

logger = get_logger("dispatch_service")


def _uuid(value: Any) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value)) if value else None
    except ValueError:
        return None


def _message_list(value: Any) -> Optional[list]:
    if not isinstance(value, list):
        return None
    return [m for m in value if isinstance(m, dict) and m.get("content")]


def _from_result(task: TaskType, result: Result, key: str) -> DispatchResponse:
    if result.ok:
        return DispatchResponse(success=True, task=task, data={key: result.value})
    return DispatchResponse(
        success=False,
        task=task,
        reason=result.error_code,
        message=result.error,
        data=result.details or None,
        retry_after=result.details.get("retry_after"),
    )


def dispatch(
    db: Session,
    request: DispatchRequest,
    llm: LLMProvider,
    user_id: Optional[UUID] = None,
    events: Optional[PostCommitEvents] = None,
) -> DispatchResponse:
    task = request.task
    payload = request.payload
    tenant_id = request.tenant_id
    lead_id = _uuid(payload.get("lead_id"))
    conversation_id = _uuid(payload.get("conversation_id"))
    message = payload.get("message") if isinstance(payload.get("message"), str) else None

    logger.info("Routing request", extra={"context": {"task": task.value, "tenant_id": str(tenant_id)}})

    if task in UNGATED_TASKS:
        config = None
    else:
        last_message = payload.get("last_message")
        gate_text = message or (last_message if isinstance(last_message, str) else None)
        decision, config = check_eligibility(db, tenant_id, request.connection_id, gate_text)
        if not decision.eligible:
            return DispatchResponse(
                success=False,
                task=task,
                reason=decision.reason,
                message=decision.message,
                data={"handoff": True} if decision.handoff else None,
            )

    if task == TaskType.CHAT:
        if not message or conversation_id is None:
            return DispatchResponse(
                success=False, task=task, reason="invalid_request", message="message and conversation_id are required"
            )
        result = generate_reply(
            db,
            ReplyRequest(
                tenant_id=tenant_id,
                conversation_id=conversation_id,
                message=message,
                lead_id=lead_id,
                image_url=payload.get("image_url") or None,
                connection_id=request.connection_id,
                config=config,
                whatsapp_style=True,
            ),
            llm,
            user_id=user_id,
            events=events,
        )
        if not result.ok:
            return _from_result(task, result, "response")
        outcome = result.value
        return DispatchResponse(
            success=True,
            task=task,
            data={
                "response": outcome.reply,
                "message_id": str(outcome.message_id),
                "conversation_id": str(outcome.conversation_id),
                "knowledge_used": outcome.knowledge_used,
                "rate_limit_remaining": outcome.rate_limit_remaining,
            },
        )

    if task in (TaskType.ANALYZE, TaskType.SENTIMENT):
        result = analyze_conversation(
            db,
            tenant_id,
            llm,
            lead_id=lead_id,
            conversation_id=conversation_id,
            messages=_message_list(payload.get("messages")),
            realtime=task == TaskType.SENTIMENT,
        )
        return _from_result(task, result, "analysis")

    if task == TaskType.QUALIFY:
        if lead_id is None:
            return DispatchResponse(success=False, task=task, reason="invalid_request", message="lead_id is required")
        result = qualify_lead(
            db,
            tenant_id,
            lead_id,
            llm,
            conversation_id=conversation_id,
            messages=_message_list(payload.get("messages")),
            events=events,
        )
        return _from_result(task, result, "qualification")

    result = suggest_replies(
        db,
        tenant_id,
        llm,
        last_message=payload.get("last_message") or message or "",
        lead_id=lead_id,
        conversation_id=conversation_id,
        history=_message_list(payload.get("conversation_history")),
    )
    return _from_result(task, result, "suggestions")

