from typing import Optional

from leadflow.config import settings
from leadflow.services.llm.base import LLMError, LLMProvider, LLMResponse
from leadflow.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMError", "LLMProvider", "LLMResponse", "OpenAIProvider", "get_llm_provider"]

_llm_provider: Optional[OpenAIProvider] = None


def get_llm_provider() -> LLMProvider:
    """Get or create LLM provider instance."""
    global _llm_provider
    if _llm_provider is None:
        _llm_provider = OpenAIProvider(
            api_key=settings.openai_api_key,
            default_model=settings.chat_model,
            vision_model=settings.vision_model,
            transcription_model=settings.transcription_model,
        )
    return _llm_provider
