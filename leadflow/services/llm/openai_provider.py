from typing import List, Optional

import httpx

from leadflow.logging_config import get_logger
from leadflow.services.llm.base import LLMError, LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI API provider."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        vision_model: str = "gpt-4o-mini",
        transcription_model: str = "whisper-1",
        base_url: str = "https://api.openai.com/v1",
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.vision_model = vision_model
        self.transcription_model = transcription_model
        self.chat_url = f"{base_url}/chat/completions"
        self.audio_url = f"{base_url}/audio/transcriptions"

    def _post_chat(self, payload: dict, timeout: float) -> dict:
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(
                    self.chat_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as exc:
            raise LLMError(f"OpenAI request failed: {exc}") from exc

        logger.debug(f"OpenAI response status: {response.status_code}")

        if response.status_code == 429:
            raise LLMError("OpenAI rate limit exceeded", status_code=429)
        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise LLMError(f"OpenAI API error: {response.status_code} - {response.text}", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            logger.error(f"OpenAI returned a non-JSON body: {response.text[:200]}")
            raise LLMError(f"OpenAI returned invalid JSON: {exc}", status_code=response.status_code) from exc
        if not isinstance(data, dict):
            raise LLMError("OpenAI returned an unexpected body", status_code=response.status_code)
        return data

    @staticmethod
    def _first_content(data: dict) -> str:
        choices = data.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        return message.get("content") or ""

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Generate response from OpenAI."""
        model = model or self.default_model
        timeout = timeout_seconds if timeout_seconds is not None else 45.0
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        data = self._post_chat(payload, timeout)
        content = self._first_content(data)
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )

    def describe_image(
        self,
        *,
        image_url: str,
        prompt: str,
        system_prompt: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> str:
        """Describe an image with the vision model."""
        messages: List[dict] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append(
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": image_url}},
                ],
            }
        )
        timeout = timeout_seconds if timeout_seconds is not None else 30.0
        data = self._post_chat({"model": self.vision_model, "messages": messages, "max_tokens": 500}, timeout)
        return self._first_content(data).strip()

    def transcribe_audio(
        self,
        *,
        audio_bytes: bytes,
        filename: str,
        mime_type: Optional[str] = None,
        language: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> str:
        """Transcribe audio using OpenAI speech-to-text."""
        if not audio_bytes:
            raise ValueError("audio_bytes is empty")

        files = {"file": (filename or "audio", audio_bytes, mime_type or "application/octet-stream")}
        data = {"model": self.transcription_model, "response_format": "text"}
        if language:
            data["language"] = language

        timeout = timeout_seconds if timeout_seconds is not None else 30.0
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(
                    self.audio_url,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    files=files,
                    data=data,
                )
        except httpx.HTTPError as exc:
            raise LLMError(f"OpenAI transcription request failed: {exc}") from exc

        logger.debug(f"OpenAI transcription status: {response.status_code}")
        if response.status_code != 200:
            logger.error(f"OpenAI transcription error: {response.text}")
            raise LLMError(
                f"OpenAI transcription error: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )

        transcript = (response.text or "").strip()
        if not transcript:
            logger.warning("OpenAI transcription returned empty text")
        return transcript
