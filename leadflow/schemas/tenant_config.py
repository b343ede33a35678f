import re
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, field_validator

DEFAULT_AI_NAME = "Marcela"
DEFAULT_COMPANY_NAME = "our company"
DEFAULT_TIMEZONE = "America/Sao_Paulo"
DEFAULT_MAX_CONTEXT_MESSAGES = 20

_HOUR_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)(:[0-5]\d)?$")


def _coerce_str_list(value: object) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(item).strip() for item in value if item is not None and str(item).strip()]
    return []


class TenantAIConfig(BaseModel):
    """Per-tenant AI settings, validated once when loaded from storage.

    Defaults: automation enabled, no blocked topics, no transfer keywords,
    no active-hours window (always on), Sao Paulo timezone, 20 history messages.
    """

    is_enabled: bool = True
    ai_name: str = DEFAULT_AI_NAME
    company_name: str = DEFAULT_COMPANY_NAME
    system_prompt: Optional[str] = None
    blocked_topics: list[str] = []
    transfer_keywords: list[str] = []
    active_hours_start: Optional[str] = None
    active_hours_end: Optional[str] = None
    timezone: Optional[str] = DEFAULT_TIMEZONE
    max_context_messages: int = DEFAULT_MAX_CONTEXT_MESSAGES

    @field_validator("blocked_topics", "transfer_keywords", mode="before")
    @classmethod
    def normalize_lists(cls, value: object) -> list[str]:
        return _coerce_str_list(value)

    @field_validator("ai_name", "company_name", mode="before")
    @classmethod
    def default_blank_names(cls, value: object, info) -> str:
        text = str(value).strip() if value is not None else ""
        if text:
            return text
        return DEFAULT_AI_NAME if info.field_name == "ai_name" else DEFAULT_COMPANY_NAME

    @field_validator("active_hours_start", "active_hours_end", mode="before")
    @classmethod
    def validate_hour(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        if not text:
            return None
        if not _HOUR_RE.match(text):
            # A malformed bound disables the window instead of rejecting the whole config.
            return None
        return ":".join(text.split(":")[:2])

    @field_validator("timezone", mode="before")
    @classmethod
    def validate_timezone(cls, value: object) -> Optional[str]:
        text = str(value).strip() if value else ""
        if not text:
            return DEFAULT_TIMEZONE
        try:
            ZoneInfo(text)
        except (ZoneInfoNotFoundError, ValueError):
            # Unknown zone: the active-hours check is skipped.
            return None
        return text

    @field_validator("max_context_messages", mode="before")
    @classmethod
    def validate_max_context(cls, value: object) -> int:
        try:
            number = int(value)
        except (TypeError, ValueError):
            return DEFAULT_MAX_CONTEXT_MESSAGES
        return number if number > 0 else DEFAULT_MAX_CONTEXT_MESSAGES

    @property
    def has_active_hours(self) -> bool:
        return bool(self.active_hours_start and self.active_hours_end)
