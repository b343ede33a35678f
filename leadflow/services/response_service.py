"""Generate, store and account for one AI reply.

Order of checks: quota, rate limit, caller authorization. The first two are
terminal and never reach the model.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadflow.config import settings
from leadflow.logging_config import get_logger
from leadflow.models import Conversation, TenantMember
from leadflow.schemas.tenant_config import TenantAIConfig
from leadflow.services.eligibility_service import load_tenant_config
from leadflow.services.knowledge_service import format_knowledge_context, search_knowledge
from leadflow.services.lead_service import touch_conversation
from leadflow.services.llm import LLMError, LLMProvider
from leadflow.services.message_service import load_history, save_message
from leadflow.services.notification_service import PostCommitEvents
from leadflow.services.prompt_service import build_history, build_messages, build_system_prompt
from leadflow.services.rate_limit_service import check_rate_limit
from leadflow.services.result import Result
from leadflow.services.usage_service import check_quota, estimate_tokens, increment_usage

logger = get_logger("response_service")

CHAT_OPERATION = "chat"
KNOWLEDGE_TOP_K = 3
CHAT_TEMPERATURE = 0.7
CHAT_MAX_TOKENS = 500


@dataclass
class ReplyRequest:
    tenant_id: UUID
    conversation_id: UUID
    message: str
    lead_id: Optional[UUID] = None
    image_url: Optional[str] = None
    connection_id: Optional[UUID] = None
    config: Optional[TenantAIConfig] = None
    whatsapp_style: bool = True


@dataclass
class ReplyOutcome:
    reply: str
    message_id: UUID
    conversation_id: UUID
    tokens: int
    knowledge_used: bool
    rate_limit_remaining: int
    rate_limit_reset_at: datetime


def is_member(db: Session, tenant_id: UUID, user_id: UUID) -> bool:
    member = (
        db.query(TenantMember)
        .filter(TenantMember.tenant_id == tenant_id, TenantMember.user_id == user_id)
        .first()
    )
    return member is not None


def _drop_current_message(history: list[dict], message: str) -> list[dict]:
    # The inbound message is usually stored before the reply is generated.
    if history and history[-1]["role"] == "user" and history[-1]["content"] == message:
        return history[:-1]
    return history


def _usage_callback(db: Session, tenant_id: UUID, tokens: int):
    def _increment() -> None:
        try:
            increment_usage(db, tenant_id, tokens)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Usage increment failed for {tenant_id}: {e}")

    return _increment


def generate_reply(
    db: Session,
    request: ReplyRequest,
    llm: LLMProvider,
    user_id: Optional[UUID] = None,
    events: Optional[PostCommitEvents] = None,
) -> Result[ReplyOutcome]:
    """Run the reply flow for one message.

    The assistant message and the conversation update are committed here.
    Usage accounting and notifications go on `events`; when the caller does
    not pass a list, it is flushed right after the commit.
    """
    owns_events = events is None
    events = events if events is not None else PostCommitEvents()
    tenant_id = request.tenant_id
    log_context = {"tenant_id": str(tenant_id), "conversation_id": str(request.conversation_id)}

    quota = check_quota(db, tenant_id)
    if not quota.allowed:
        logger.warning("Usage limit exceeded", extra={"context": {**log_context, "error": quota.error}})
        return Result.failure(quota.error, "quota_exceeded", plan=quota.plan, limit=quota.limit, used=quota.used)

    rate = check_rate_limit(
        db,
        tenant_id,
        CHAT_OPERATION,
        max_requests=settings.chat_rate_limit_max_requests,
        window_ms=settings.chat_rate_limit_window_ms,
    )
    if not rate.allowed:
        logger.warning("Rate limit exceeded", extra={"context": {**log_context, "retry_after": rate.retry_after}})
        return Result.failure(
            "Rate limit exceeded. Too many requests.",
            "rate_limited",
            retry_after=rate.retry_after,
            reset_at=rate.reset_at.isoformat(),
            limit=settings.chat_rate_limit_max_requests,
        )

    if user_id is not None and not is_member(db, tenant_id, user_id):
        logger.warning("Tenant access denied", extra={"context": {**log_context, "user_id": str(user_id)}})
        return Result.failure("Access denied to this workspace", "forbidden")

    conversation = (
        db.query(Conversation)
        .filter(Conversation.id == request.conversation_id, Conversation.tenant_id == tenant_id)
        .first()
    )
    if conversation is None:
        return Result.failure("Conversation not found", "not_found")

    config = request.config or load_tenant_config(db, tenant_id)
    stored = load_history(db, conversation.id, config.max_context_messages)
    history = _drop_current_message(build_history(stored, config.max_context_messages), request.message)
    logger.debug(f"Conversation history loaded: {len(history)} messages")

    knowledge = search_knowledge(tenant_id, request.message, limit=KNOWLEDGE_TOP_K)
    knowledge_context = format_knowledge_context(knowledge)
    system_prompt = build_system_prompt(config, knowledge_context, whatsapp_style=request.whatsapp_style)
    messages = build_messages(system_prompt, history, request.message, request.image_url)

    try:
        response = llm.generate(
            messages,
            model=settings.chat_model,
            temperature=CHAT_TEMPERATURE,
            max_tokens=CHAT_MAX_TOKENS,
            timeout_seconds=settings.chat_timeout_seconds,
        )
    except LLMError as e:
        logger.error(f"AI generation failed: {e}", extra={"context": log_context})
        return Result.failure(str(e), "ai_error", status_code=e.status_code)

    reply = (response.content or "").strip()
    if not reply:
        return Result.failure("Empty response from model", "ai_error")

    tokens = estimate_tokens(request.message, reply)
    try:
        saved = save_message(
            db,
            conversation.id,
            tenant_id,
            "ai",
            reply,
            connection_id=request.connection_id,
            message_metadata={"model": response.model, "knowledge_used": bool(knowledge_context)},
        )
        touch_conversation(conversation, datetime.now(timezone.utc))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to store AI reply: {e}", extra={"context": log_context})
        return Result.failure("Failed to store AI reply", "db_error")

    events.after_commit(_usage_callback(db, tenant_id, tokens))
    if owns_events:
        events.flush(db)

    logger.info(
        "AI reply generated",
        extra={"context": {**log_context, "length": len(reply), "knowledge_used": bool(knowledge_context)}},
    )
    return Result.success(
        ReplyOutcome(
            reply=reply,
            message_id=saved.id,
            conversation_id=conversation.id,
            tokens=tokens,
            knowledge_used=bool(knowledge_context),
            rate_limit_remaining=rate.remaining,
            rate_limit_reset_at=rate.reset_at,
        )
    )
