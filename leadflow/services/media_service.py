"""Turn voice notes and images into text the rest of the pipeline can store."""

import base64
from typing import Optional

import httpx

from leadflow.config import settings
from leadflow.logging_config import get_logger
from leadflow.schemas.inbound import MediaRef
from leadflow.services.llm import LLMError, LLMProvider

logger = get_logger("media_service")

AUDIO_UNAVAILABLE = "[Audio received - transcription unavailable]"
IMAGE_NOT_AVAILABLE = "Image not available"
IMAGE_NOT_ANALYZED = "Could not analyze the image"
IMAGE_ANALYSIS_ERROR = "Error analyzing the image"

VISION_SYSTEM_PROMPT = (
    "You describe images sent by customers to a sales team. "
    "Describe what you see clearly and in a way that is useful in a sales conversation. "
    "If there is text in the image, transcribe it."
)

_AUDIO_EXTENSIONS = {
    "audio/ogg": "ogg",
    "audio/opus": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/aac": "aac",
    "audio/wav": "wav",
    "audio/webm": "webm",
}


class MediaDownloadError(Exception):
    pass


def _audio_filename(mime_type: Optional[str]) -> str:
    base = (mime_type or "").split(";", 1)[0].strip().lower()
    return f"voice.{_AUDIO_EXTENSIONS.get(base, 'ogg')}"


def download_media(
    url: str,
    *,
    headers: Optional[dict] = None,
    timeout_seconds: Optional[float] = None,
    max_bytes: Optional[int] = None,
) -> bytes:
    """Download media bytes with a bounded timeout and size limit."""
    timeout = timeout_seconds if timeout_seconds is not None else settings.media_download_timeout_seconds
    limit = max_bytes if max_bytes is not None else int(settings.media_max_mb * 1024 * 1024)

    try:
        with httpx.Client(timeout=timeout, follow_redirects=True) as client:
            with client.stream("GET", url, headers=headers) as response:
                if response.status_code != 200:
                    raise MediaDownloadError(f"download failed with status {response.status_code}")
                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > limit:
                    raise MediaDownloadError(f"media too large: {declared} bytes")
                chunks = []
                total = 0
                for chunk in response.iter_bytes():
                    total += len(chunk)
                    if total > limit:
                        raise MediaDownloadError(f"media exceeds {limit} bytes")
                    chunks.append(chunk)
    except httpx.HTTPError as exc:
        raise MediaDownloadError(str(exc)) from exc

    return b"".join(chunks)


def _media_bytes(media_ref: MediaRef, headers: Optional[dict] = None) -> bytes:
    if media_ref.base64_data:
        data = media_ref.base64_data
        if data.startswith("data:") and "," in data:
            data = data.split(",", 1)[1]
        try:
            return base64.b64decode(data)
        except ValueError as exc:
            raise MediaDownloadError(f"invalid base64 payload: {exc}") from exc
    if media_ref.url:
        return download_media(media_ref.url, headers=headers)
    raise MediaDownloadError("media reference has no url or inline data")


def _image_source(media_ref: MediaRef) -> Optional[str]:
    if media_ref.base64_data:
        if media_ref.base64_data.startswith("data:"):
            return media_ref.base64_data
        mime_type = media_ref.mime_type or "image/jpeg"
        return f"data:{mime_type};base64,{media_ref.base64_data}"
    return media_ref.url


def resolve_audio(
    media_ref: Optional[MediaRef],
    llm: LLMProvider,
    *,
    headers: Optional[dict] = None,
) -> str:
    """Return the transcript of a voice note, or a placeholder. Never raises."""
    if media_ref is None or not (media_ref.url or media_ref.base64_data):
        logger.warning("No audio source provided")
        return AUDIO_UNAVAILABLE

    try:
        audio_bytes = _media_bytes(media_ref, headers=headers)
        logger.debug(
            "Audio downloaded",
            extra={"context": {"size": len(audio_bytes), "mime_type": media_ref.mime_type}},
        )
        transcript = llm.transcribe_audio(
            audio_bytes=audio_bytes,
            filename=media_ref.file_name or _audio_filename(media_ref.mime_type),
            mime_type=media_ref.mime_type or "audio/ogg",
            language=settings.transcription_language,
            timeout_seconds=settings.transcription_timeout_seconds,
        )
    except (MediaDownloadError, LLMError, ValueError) as exc:
        logger.warning(f"Audio transcription failed: {exc}")
        return AUDIO_UNAVAILABLE

    transcript = (transcript or "").strip()
    if not transcript:
        return AUDIO_UNAVAILABLE
    logger.info("Audio transcribed", extra={"context": {"length": len(transcript)}})
    return transcript


def describe_image(
    media_ref: Optional[MediaRef],
    llm: LLMProvider,
    context: Optional[str] = None,
    *,
    headers: Optional[dict] = None,
) -> str:
    """Vision description of an image; failures come back as placeholder text.

    URLs that need auth headers are downloaded here and sent inline.
    """
    source = _image_source(media_ref) if media_ref else None
    if not source:
        logger.warning("No image source provided")
        return IMAGE_NOT_AVAILABLE
    if headers and not media_ref.base64_data:
        try:
            encoded = base64.b64encode(download_media(source, headers=headers)).decode("ascii")
        except MediaDownloadError as exc:
            logger.warning(f"Image download failed: {exc}")
            return IMAGE_NOT_AVAILABLE
        source = f"data:{media_ref.mime_type or 'image/jpeg'};base64,{encoded}"

    prompt = f"Conversation context: {context}\n\nDescribe this image:" if context else "Describe this image:"
    try:
        description = llm.describe_image(
            image_url=source,
            prompt=prompt,
            system_prompt=VISION_SYSTEM_PROMPT,
            timeout_seconds=settings.vision_timeout_seconds,
        )
    except LLMError as exc:
        logger.warning(f"Image analysis failed: {exc}")
        return IMAGE_ANALYSIS_ERROR

    if not description:
        return IMAGE_NOT_ANALYZED
    logger.info("Image analyzed", extra={"context": {"length": len(description)}})
    return description


def resolve_image(
    media_ref: Optional[MediaRef],
    caption: Optional[str],
    llm: LLMProvider,
    *,
    headers: Optional[dict] = None,
) -> str:
    """Combine the customer's caption with a generated description."""
    caption = (caption or "").strip()
    description = describe_image(media_ref, llm, context=caption or None, headers=headers)
    if caption:
        return f"{caption}\n\n[Image description: {description}]"
    return f"[Image: {description}]"


def graph_media_url(media_id: str, access_token: str) -> Optional[str]:
    """Look up the short-lived download URL of an official Cloud API media id."""
    try:
        with httpx.Client(timeout=settings.media_download_timeout_seconds) as client:
            response = client.get(
                f"{settings.graph_api_url}/{media_id}",
                headers={"Authorization": f"Bearer {access_token}"},
            )
    except httpx.HTTPError as exc:
        logger.warning(f"Graph media lookup failed: {exc}")
        return None

    if response.status_code != 200:
        logger.warning(f"Graph media lookup returned {response.status_code}")
        return None
    return response.json().get("url")


def with_download_url(media_ref: Optional[MediaRef], access_token: Optional[str]) -> tuple[Optional[MediaRef], dict]:
    """Resolve an official media id into a downloadable reference plus auth headers."""
    if media_ref is None or media_ref.url or media_ref.base64_data:
        return media_ref, {}
    if not media_ref.media_id or not access_token:
        return media_ref, {}
    url = graph_media_url(media_ref.media_id, access_token)
    if not url:
        return media_ref, {}
    return media_ref.model_copy(update={"url": url}), {"Authorization": f"Bearer {access_token}"}
