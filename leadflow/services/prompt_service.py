from typing import Iterable, List, Optional

from leadflow.models import Message
from leadflow.schemas.tenant_config import DEFAULT_MAX_CONTEXT_MESSAGES, TenantAIConfig

PERSONA_PROMPT = """## IDENTITY
My name is **{{ai_name}}** and I am the sales consultant of **{{company_name}}**.

<mission>
I help customers understand how {{company_name}} can solve their problem, qualify their interest
and guide them to a clear next step (a meeting, a purchase or a handoff to the team).
</mission>

<approach>
- Consultative: I listen and understand the context before suggesting anything.
- Empathetic: I acknowledge the customer's situation.
- Clear: I turn complex things into practical answers focused on benefits.
- Proactive: every reply ends with a clear next step.
</approach>

<principles>
1. The customer's goals come first, not our feature list.
2. Value before the sale: offer something useful before asking for a commitment.
3. Be brief and direct; the customer's time matters.
4. Be honest about what we can and cannot do. Never promise what is not confirmed.
</principles>

<core_rule>
I am {{ai_name}} from {{company_name}}. I never describe myself as an AI, a bot or a robot.
If a conversation turns hostile or goes beyond what I can handle, I offer to bring in a human colleague.
</core_rule>"""

BLOCKED_TOPICS_BLOCK = """<blocked_topics>
STRICTLY FORBIDDEN TOPICS: {topics}.
If the customer insists on these subjects, politely close the topic.
</blocked_topics>"""

ADMIN_INSTRUCTIONS_BLOCK = """<admin_instructions>
{instructions}
</admin_instructions>"""

KNOWLEDGE_BLOCK = """<knowledge_context>
Use ONLY the information below as the factual source for specific questions about the company and its products:

{knowledge}

If the answer is not here, use consultative judgment but do not invent technical details.
</knowledge_context>"""

NO_KNOWLEDGE_NOTICE = "<knowledge_notice>No company knowledge is loaded for this interaction.</knowledge_notice>"

WHATSAPP_STYLE_INSTRUCTIONS = (
    "IMPORTANT: Reply in a natural WhatsApp style. Use short lines, moderate emojis, "
    "and avoid long or robotic texts. Do not sound like an AI."
)


def render_persona(config: TenantAIConfig) -> str:
    return PERSONA_PROMPT.replace("{{ai_name}}", config.ai_name).replace("{{company_name}}", config.company_name)


def build_system_prompt(config: TenantAIConfig, knowledge_context: str = "", whatsapp_style: bool = False) -> str:
    """Persona, blocked topics, tenant instructions, then the knowledge block."""
    sections = [render_persona(config)]

    if config.blocked_topics:
        sections.append(BLOCKED_TOPICS_BLOCK.format(topics=", ".join(config.blocked_topics)))

    instructions = (config.system_prompt or "").strip()
    if whatsapp_style:
        instructions = f"{instructions}\n\n{WHATSAPP_STYLE_INSTRUCTIONS}".strip()
    if instructions:
        sections.append(ADMIN_INSTRUCTIONS_BLOCK.format(instructions=instructions))

    if knowledge_context:
        sections.append(KNOWLEDGE_BLOCK.format(knowledge=knowledge_context))
    else:
        sections.append(NO_KNOWLEDGE_NOTICE)

    return "\n\n".join(sections)


def history_role(sender_type: str) -> str:
    return "user" if sender_type == "lead" else "assistant"


def build_history(messages: Iterable[Message], limit: int = DEFAULT_MAX_CONTEXT_MESSAGES) -> List[dict]:
    """Chat-completion history from stored messages (oldest first), keeping the last `limit`."""
    items = [
        {"role": history_role(m.sender_type), "content": m.content}
        for m in messages
        if m.content
    ]
    if limit > 0:
        items = items[-limit:]
    return items


def build_user_content(text: str, image_url: Optional[str] = None):
    if not image_url:
        return text
    return [
        {"type": "text", "text": text},
        {"type": "image_url", "image_url": {"url": image_url, "detail": "low"}},
    ]


def build_messages(
    system_prompt: str,
    history: List[dict],
    user_message: str,
    image_url: Optional[str] = None,
) -> List[dict]:
    return [
        {"role": "system", "content": system_prompt},
        *history,
        {"role": "user", "content": build_user_content(user_message, image_url)},
    ]
