from unittest.mock import MagicMock, Mock, patch

from leadflow.schemas.inbound import MediaRef
from leadflow.services.llm import LLMError
from leadflow.services.media_service import (
    AUDIO_UNAVAILABLE,
    IMAGE_ANALYSIS_ERROR,
    IMAGE_NOT_AVAILABLE,
    MediaDownloadError,
    resolve_audio,
    resolve_image,
    with_download_url,
)


class TestResolveAudio:
    @patch("leadflow.services.media_service.download_media", return_value=b"OggS...")
    def test_transcribes_downloaded_audio(self, mock_download, llm):
        media = MediaRef(url="https://x/a.ogg", mime_type="audio/ogg; codecs=opus")

        assert resolve_audio(media, llm) == "I would like a quote"
        assert llm.transcribe_audio.call_args[1]["audio_bytes"] == b"OggS..."
        assert llm.transcribe_audio.call_args[1]["filename"] == "voice.ogg"

    def test_inline_base64(self, llm):
        media = MediaRef(base64_data="T2dnUw==", mime_type="audio/mpeg")

        resolve_audio(media, llm)

        assert llm.transcribe_audio.call_args[1]["audio_bytes"] == b"OggS"
        assert llm.transcribe_audio.call_args[1]["filename"] == "voice.mp3"

    def test_no_source(self, llm):
        assert resolve_audio(None, llm) == AUDIO_UNAVAILABLE
        assert resolve_audio(MediaRef(media_id="123"), llm) == AUDIO_UNAVAILABLE

    @patch("leadflow.services.media_service.download_media", side_effect=MediaDownloadError("status 404"))
    def test_download_failure(self, mock_download, llm):
        assert resolve_audio(MediaRef(url="https://x/a.ogg"), llm) == AUDIO_UNAVAILABLE
        llm.transcribe_audio.assert_not_called()

    @patch("leadflow.services.media_service.download_media", return_value=b"data")
    def test_transcription_failure(self, mock_download, llm):
        llm.transcribe_audio.side_effect = LLMError("timeout")
        assert resolve_audio(MediaRef(url="https://x/a.ogg"), llm) == AUDIO_UNAVAILABLE

    @patch("leadflow.services.media_service.download_media", return_value=b"data")
    def test_empty_transcript(self, mock_download, llm):
        llm.transcribe_audio.return_value = "   "
        assert resolve_audio(MediaRef(url="https://x/a.ogg"), llm) == AUDIO_UNAVAILABLE


class TestResolveImage:
    def test_caption_and_description(self, llm):
        text = resolve_image(MediaRef(url="https://x/i.jpg"), "Do you have it in blue?", llm)
        assert text == "Do you have it in blue?\n\n[Image description: A red sneaker]"
        assert "Do you have it in blue?" in llm.describe_image.call_args[1]["prompt"]

    def test_description_only(self, llm):
        assert resolve_image(MediaRef(url="https://x/i.jpg"), None, llm) == "[Image: A red sneaker]"

    def test_missing_source(self, llm):
        assert resolve_image(None, "hi", llm) == f"hi\n\n[Image description: {IMAGE_NOT_AVAILABLE}]"

    def test_vision_failure(self, llm):
        llm.describe_image.side_effect = LLMError("500")
        assert resolve_image(MediaRef(url="https://x/i.jpg"), None, llm) == f"[Image: {IMAGE_ANALYSIS_ERROR}]"

    @patch("leadflow.services.media_service.download_media", return_value=b"\x89PNG")
    def test_authenticated_url_sent_inline(self, mock_download, llm):
        media = MediaRef(url="https://lookaside.fbsbx.com/x", mime_type="image/png")

        resolve_image(media, None, llm, headers={"Authorization": "Bearer t"})

        assert llm.describe_image.call_args[1]["image_url"] == "data:image/png;base64,iVBORw=="
        mock_download.assert_called_once_with("https://lookaside.fbsbx.com/x", headers={"Authorization": "Bearer t"})


class TestWithDownloadUrl:
    @patch("leadflow.services.media_service.httpx.Client")
    def test_resolves_media_id(self, mock_client_class):
        client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = client
        response = Mock(status_code=200)
        response.json.return_value = {"url": "https://lookaside.fbsbx.com/x"}
        client.get.return_value = response

        media, headers = with_download_url(MediaRef(media_id="m-1"), "token")

        assert media.url == "https://lookaside.fbsbx.com/x"
        assert headers == {"Authorization": "Bearer token"}

    def test_keeps_existing_url(self):
        media = MediaRef(url="https://x/a.ogg", media_id="m-1")
        assert with_download_url(media, "token") == (media, {})

    def test_no_token(self):
        media = MediaRef(media_id="m-1")
        assert with_download_url(media, None) == (media, {})
