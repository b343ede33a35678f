import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from leadflow.config import settings
from leadflow.logging_config import get_logger
from leadflow.models import LearnedContent, TrainingStatus
from leadflow.services.eligibility_service import load_training_status
from leadflow.services.llm import LLMError, LLMProvider
from leadflow.services.training_state import TrainingState, evaluate_readiness

logger = get_logger("learning_service")

MATCH_PREFIX_LENGTH = 50
CONTEXT_MESSAGES = 5

CATEGORY_COUNTERS = {
    "faq": "faqs_detected",
    "response_pattern": "response_patterns_learned",
    "company_info": "company_info_extracted",
    "objection_handling": "objections_learned",
    "product_info": "product_info_extracted",
}

CATEGORY_ALIASES = {
    "seller_response": "response_pattern",
    "seller_pattern": "response_pattern",
}

CLASSIFIER_SYSTEM_PROMPT = (
    "You analyze sales conversations. Extract reusable knowledge from the sales agents' replies. "
    "Always answer with valid JSON."
)

CLASSIFIER_PROMPT = """Analyze this reply from a sales agent and identify useful knowledge.

Conversation context:
{context}

Agent reply to analyze:
{reply}

Does this reply contain:
1. FAQ - an answer to a frequently asked question
2. RESPONSE_PATTERN - an effective way of answering
3. COMPANY_INFO - information about the company (prices, policies, opening hours, etc)
4. OBJECTION_HANDLING - how to handle a customer objection
5. PRODUCT_INFO - information about products or services

Answer in JSON:
{{
  "has_learning": true/false,
  "content_type": "faq" | "response_pattern" | "company_info" | "objection_handling" | "product_info",
  "question": "the customer's question, if any",
  "answer": "the extracted answer or information",
  "context": "relevant context",
  "keywords": ["key", "words"],
  "confidence": 0.0-1.0
}}

If there is nothing useful to learn, return {{"has_learning": false}}"""


@dataclass
class LearningOutcome:
    learned: bool
    reason: Optional[str] = None
    content_type: Optional[str] = None
    content_id: Optional[UUID] = None
    became_ready: bool = False


def parse_json_reply(content: str) -> Optional[dict]:
    """Parse a JSON object out of a model reply, tolerating ``` fences."""
    text = content or ""
    if "```json" in text:
        text = text.split("```json", 1)[1].split("```", 1)[0]
    elif "```" in text:
        text = text.split("```", 1)[1].split("```", 1)[0]
    try:
        data = json.loads(text.strip())
    except ValueError:
        logger.warning("Failed to parse model reply as JSON", extra={"context": {"content": content[:200]}})
        return None
    return data if isinstance(data, dict) else None


def normalize_category(value: Optional[str]) -> Optional[str]:
    category = (value or "").strip().lower()
    category = CATEGORY_ALIASES.get(category, category)
    return category if category in CATEGORY_COUNTERS else None


def _as_confidence(value: object) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _learning_status(db: Session, tenant_id: UUID) -> Optional[TrainingStatus]:
    status = load_training_status(db, tenant_id)
    if status is None or status.status != TrainingState.LEARNING.value:
        return None
    return status


def record_inbound(db: Session, tenant_id: UUID, now: Optional[datetime] = None) -> bool:
    """Count one analyzed message while the tenant is learning. Returns True if counted."""
    status = _learning_status(db, tenant_id)
    if status is None:
        return False

    now = now or datetime.now(timezone.utc)
    status.messages_analyzed = (status.messages_analyzed or 0) + 1
    status.updated_at = now
    if evaluate_readiness(status, now):
        logger.info("AI training marked as ready", extra={"context": {"tenant_id": str(tenant_id)}})
    db.flush()
    return True


def classify_reply(llm: LLMProvider, content: str, history: Optional[List[dict]] = None) -> Optional[dict]:
    lines = []
    for item in (history or [])[-CONTEXT_MESSAGES:]:
        speaker = "Customer" if item.get("sender_type") == "lead" else "Agent"
        lines.append(f"{speaker}: {item.get('content', '')}")

    prompt = CLASSIFIER_PROMPT.format(context="\n".join(lines) or "(none)", reply=content)
    try:
        response = llm.generate(
            [
                {"role": "system", "content": CLASSIFIER_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            model=settings.chat_model,
            temperature=0.3,
            max_tokens=600,
            timeout_seconds=settings.chat_timeout_seconds,
        )
    except LLMError as e:
        logger.warning(f"Learning classification failed: {e}")
        return None
    return parse_json_reply(response.content)


def find_similar_content(db: Session, tenant_id: UUID, content_type: str, answer: str) -> Optional[LearnedContent]:
    prefix = answer[:MATCH_PREFIX_LENGTH]
    return (
        db.query(LearnedContent)
        .filter(
            LearnedContent.tenant_id == tenant_id,
            LearnedContent.content_type == content_type,
            LearnedContent.answer.ilike(f"%{_escape_like(prefix)}%", escape="\\"),
        )
        .first()
    )


def learn_from_agent_reply(
    db: Session,
    tenant_id: UUID,
    conversation_id: Optional[UUID],
    message_id: Optional[UUID],
    content: str,
    llm: LLMProvider,
    history: Optional[List[dict]] = None,
    now: Optional[datetime] = None,
) -> LearningOutcome:
    """Extract reusable knowledge from a human agent's reply during the learning period."""
    status = _learning_status(db, tenant_id)
    if status is None:
        return LearningOutcome(learned=False, reason="not_learning")

    now = now or datetime.now(timezone.utc)
    status.messages_analyzed = (status.messages_analyzed or 0) + 1
    status.updated_at = now

    analysis = classify_reply(llm, content, history)
    category = normalize_category(analysis.get("content_type")) if analysis else None
    answer = str(analysis.get("answer") or "").strip() if analysis else ""
    confidence = _as_confidence(analysis.get("confidence")) if analysis else 0.0

    if not analysis or not analysis.get("has_learning") or not category or not answer:
        outcome = LearningOutcome(learned=False, reason="no_learning_detected")
    elif confidence <= settings.learning_confidence_threshold:
        outcome = LearningOutcome(learned=False, reason="low_confidence", content_type=category)
    else:
        existing = find_similar_content(db, tenant_id, category, answer)
        if existing:
            existing.occurrence_count = (existing.occurrence_count or 1) + 1
            existing.effectiveness_score = min(100, existing.occurrence_count * 10)
            existing.updated_at = now
            content_id = existing.id
            logger.info("Updated existing learned content", extra={"context": {"id": str(existing.id)}})
        else:
            keywords = analysis.get("keywords")
            item = LearnedContent(
                tenant_id=tenant_id,
                content_type=category,
                question=analysis.get("question") or None,
                answer=answer,
                context=analysis.get("context") or None,
                keywords=keywords if isinstance(keywords, list) else [],
                occurrence_count=1,
                effectiveness_score=round(confidence * 100, 2),
                source_message_id=message_id,
                source_conversation_id=conversation_id,
                created_at=now,
                updated_at=now,
            )
            db.add(item)
            db.flush()
            counter = CATEGORY_COUNTERS[category]
            setattr(status, counter, (getattr(status, counter) or 0) + 1)
            content_id = item.id
            logger.info("Inserted new learned content", extra={"context": {"type": category}})
        outcome = LearningOutcome(learned=True, content_type=category, content_id=content_id)

    outcome.became_ready = evaluate_readiness(status, now)
    if outcome.became_ready:
        logger.info("AI training marked as ready", extra={"context": {"tenant_id": str(tenant_id)}})
    db.flush()
    return outcome
