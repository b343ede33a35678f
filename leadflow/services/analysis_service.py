"""Conversation analysis tasks: sentiment, lead qualification and reply suggestions."""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from leadflow.config import settings
from leadflow.logging_config import get_logger
from leadflow.models import Conversation, Lead, Message
from leadflow.services.learning_service import parse_json_reply
from leadflow.services.llm import LLMError, LLMProvider
from leadflow.services.notification_service import PostCommitEvents, hot_lead_event
from leadflow.services.result import Result

logger = get_logger("analysis_service")

HOT_LEAD_SCORE = 70
SENTIMENTS = {"positive", "neutral", "negative"}
TEMPERATURES = {"cold", "warm", "hot"}

ANALYSIS_SYSTEM_PROMPT = "You analyze sales conversations. Always answer with valid JSON."

ANALYSIS_PROMPT = """Analyze the conversation below and return JSON:
{
  "sentiment": "positive" | "neutral" | "negative",
  "sentiment_score": number between -1 (very negative) and 1 (very positive),
  "intent": "main intent of the lead (purchase, question, complaint, support, etc)",
  "topics": ["topics discussed"],
  "summary": "2-3 sentence summary",
  "key_points": ["key points"],
  "mentioned_products": ["products mentioned"],
  "mentioned_services": ["services mentioned"],
  "is_resolved": true | false,
  "urgency": "low" | "medium" | "high",
  "buying_signals": ["buying signals detected"],
  "objections": ["customer objections or concerns"]
}

IMPORTANT:
- Answer ONLY with the JSON
- Buying signals: interest, questions about price or availability
- Objections: high price, doubts, comparisons

CONVERSATION:
"""

QUICK_SENTIMENT_PROMPT = """Analyze ONLY the sentiment of this message and return JSON:
{
  "sentiment": "positive" | "neutral" | "negative",
  "sentiment_score": number between -1 and 1,
  "urgency": "low" | "medium" | "high"
}

MESSAGE:
"""

QUALIFY_SYSTEM_PROMPT = (
    "You are an expert in sales lead qualification. Analyze conversations and assign precise scores. "
    "Answer in JSON."
)

QUALIFY_PROMPT = """Analyze the conversation and qualify the lead from 0 to 100.

Return JSON:
{
  "score": number from 0 to 100,
  "temperature": "cold" | "warm" | "hot",
  "buying_intent": "none" | "low" | "medium" | "high",
  "objections": ["objections identified"],
  "recommended_actions": ["recommended actions for the agent"],
  "reasoning": "short explanation of the score"
}

SCORING:
- 0-30 (cold): no clear interest, only curiosity or support
- 31-60 (warm): shows interest, asks about product or price
- 61-80 (hot): high interest, discussing purchase details
- 81-100 (hot+): ready to buy, asking for payment options

"""

SUGGEST_SYSTEM_PROMPT = "You are an expert sales assistant helping agents answer leads. Always answer with valid JSON."

SUGGEST_PROMPT = """Based on the conversation history and the lead's last message, suggest 3-4 different replies the agent can use.

For each suggestion return:
- text: the suggested reply
- type: "friendly", "professional", "closing" or "objection_handling"
- confidence: 0 to 1
- strategy: short explanation of the strategy

Answer in JSON:
{
  "suggestions": [
    { "text": "...", "type": "...", "confidence": 0.9, "strategy": "..." }
  ]
}

RULES:
1. Keep suggestions short (max 2 paragraphs)
2. Adapt the tone to the conversation
3. If an objection is detected, include an objection-handling suggestion
4. If the lead is interested, include a closing suggestion
"""


def _speaker(sender_type: str) -> str:
    return "Lead" if sender_type == "lead" else "Agent"


def format_transcript(messages: List[dict]) -> str:
    return "\n".join(f"[{_speaker(m.get('sender_type', ''))}]: {m.get('content', '')}" for m in messages)


def conversation_messages(db: Session, conversation_id: UUID) -> List[dict]:
    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc())
        .all()
    )
    return [{"content": m.content, "sender_type": m.sender_type} for m in rows]


def _ask_json(llm: LLMProvider, system_prompt: str, prompt: str, max_tokens: int, temperature: float) -> Optional[dict]:
    response = llm.generate(
        [{"role": "system", "content": system_prompt}, {"role": "user", "content": prompt}],
        model=settings.chat_model,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout_seconds=settings.chat_timeout_seconds,
    )
    return parse_json_reply(response.content)


def _tenant_lead(db: Session, tenant_id: UUID, lead_id: Optional[UUID]) -> Optional[Lead]:
    if lead_id is None:
        return None
    return db.query(Lead).filter(Lead.id == lead_id, Lead.tenant_id == tenant_id).first()


def _tenant_conversation(db: Session, tenant_id: UUID, conversation_id: Optional[UUID]) -> Optional[Conversation]:
    if conversation_id is None:
        return None
    return (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id, Conversation.tenant_id == tenant_id)
        .first()
    )


def analyze_conversation(
    db: Session,
    tenant_id: UUID,
    llm: LLMProvider,
    *,
    lead_id: Optional[UUID] = None,
    conversation_id: Optional[UUID] = None,
    messages: Optional[List[dict]] = None,
    realtime: bool = False,
) -> Result[dict]:
    """Sentiment analysis; stores the sentiment on the lead and the conversation.

    `realtime` runs the quick single-message variant.
    """
    if not messages and conversation_id:
        messages = conversation_messages(db, conversation_id)
    if not messages:
        return Result.failure("No messages to analyze", "invalid_request")

    if realtime:
        prompt = QUICK_SENTIMENT_PROMPT + format_transcript(messages[-1:])
        max_tokens = 200
    else:
        prompt = ANALYSIS_PROMPT + format_transcript(messages)
        max_tokens = 800

    try:
        analysis = _ask_json(llm, ANALYSIS_SYSTEM_PROMPT, prompt, max_tokens, 0.2)
    except LLMError as e:
        logger.warning(f"Analysis failed: {e}")
        return Result.failure(str(e), "ai_error")
    if not analysis:
        return Result.failure("Could not parse analysis", "ai_error")

    sentiment = str(analysis.get("sentiment") or "").lower()
    if sentiment in SENTIMENTS:
        now = datetime.now(timezone.utc)
        conversation = _tenant_conversation(db, tenant_id, conversation_id)
        if conversation:
            conversation.sentiment = sentiment
            conversation.updated_at = now
        lead = _tenant_lead(db, tenant_id, lead_id)
        if lead:
            lead.sentiment = sentiment
            lead.updated_at = now
        db.flush()

    logger.info(
        "Analysis complete",
        extra={"context": {"tenant_id": str(tenant_id), "sentiment": sentiment, "realtime": realtime}},
    )
    return Result.success(analysis)


def qualify_lead(
    db: Session,
    tenant_id: UUID,
    lead_id: UUID,
    llm: LLMProvider,
    *,
    conversation_id: Optional[UUID] = None,
    messages: Optional[List[dict]] = None,
    events: Optional[PostCommitEvents] = None,
) -> Result[dict]:
    """Score the lead 0-100 and set its temperature; hot leads raise a notification."""
    lead = _tenant_lead(db, tenant_id, lead_id)
    if lead is None:
        return Result.failure("Lead not found", "not_found")

    if not messages and conversation_id:
        messages = conversation_messages(db, conversation_id)
    if not messages:
        return Result.success(
            {
                "score": 0,
                "temperature": "cold",
                "buying_intent": "none",
                "objections": [],
                "recommended_actions": ["Start the conversation to understand the lead's interest"],
                "reasoning": "No messages to analyze",
            }
        )

    lead_info = f"LEAD INFO:\n- Name: {lead.display_name}\n- Source: {lead.source}\n- Created: {lead.created_at}\n\n"
    try:
        qualification = _ask_json(llm, QUALIFY_SYSTEM_PROMPT, QUALIFY_PROMPT + lead_info + format_transcript(messages), 600, 0.2)
    except LLMError as e:
        logger.warning(f"Qualification failed: {e}")
        return Result.failure(str(e), "ai_error")
    if not qualification:
        return Result.failure("Could not parse qualification", "ai_error")

    try:
        score = max(0, min(100, int(float(qualification.get("score", 0)))))
    except (TypeError, ValueError):
        score = 0
    temperature = str(qualification.get("temperature") or "").lower()
    qualification["score"] = score

    lead.score = score
    if temperature in TEMPERATURES:
        lead.temperature = temperature
    lead.updated_at = datetime.now(timezone.utc)
    db.flush()

    if temperature == "hot" and score >= HOT_LEAD_SCORE and events is not None:
        events.notify(
            hot_lead_event(
                tenant_id,
                lead.id,
                lead.display_name or lead.phone,
                score,
                f"Score {score}/100 - {qualification.get('reasoning') or ''}",
            )
        )

    logger.info(
        "Qualification complete",
        extra={"context": {"lead_id": str(lead.id), "score": score, "temperature": temperature}},
    )
    return Result.success(qualification)


def suggest_replies(
    db: Session,
    tenant_id: UUID,
    llm: LLMProvider,
    *,
    last_message: str,
    lead_id: Optional[UUID] = None,
    conversation_id: Optional[UUID] = None,
    history: Optional[List[dict]] = None,
) -> Result[list]:
    """3-4 suggested replies for a human agent."""
    if not last_message:
        return Result.failure("last_message is required", "invalid_request")
    if history is None and conversation_id:
        history = conversation_messages(db, conversation_id)

    context = ""
    lead = _tenant_lead(db, tenant_id, lead_id)
    if lead:
        context = (
            f"LEAD INFO:\n- Name: {lead.display_name}\n- Temperature: {lead.temperature}\n"
            f"- Score: {lead.score}\n- Current sentiment: {lead.sentiment or 'unknown'}\n\n"
        )

    prompt = (
        SUGGEST_PROMPT
        + "\n"
        + context
        + "CONVERSATION HISTORY:\n"
        + format_transcript(history or [])
        + "\n\nLEAD'S LAST MESSAGE:\n"
        + last_message
    )
    try:
        parsed = _ask_json(llm, SUGGEST_SYSTEM_PROMPT, prompt, 1000, 0.7)
    except LLMError as e:
        logger.warning(f"Suggestions failed: {e}")
        return Result.failure(str(e), "ai_error")

    suggestions = parsed.get("suggestions") if parsed else None
    if not isinstance(suggestions, list):
        return Result.failure("Could not parse suggestions", "ai_error")
    return Result.success(suggestions)
