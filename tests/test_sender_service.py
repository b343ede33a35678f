from unittest.mock import MagicMock, Mock, patch

import httpx

from leadflow.services.sender_service import send_text


def _client(mock_client_class, status_code=200, payload=None):
    client = MagicMock()
    mock_client_class.return_value.__enter__.return_value = client
    response = Mock(status_code=status_code, text="{}")
    response.json.return_value = payload or {}
    client.post.return_value = response
    return client


class TestSendText:
    @patch("leadflow.services.sender_service.httpx.Client")
    def test_evolution(self, mock_client_class, evolution_connection):
        client = _client(mock_client_class, 201, {"key": {"id": "3EB0"}})

        result = send_text(evolution_connection, "5511999990000", "Hi Joana!")

        assert result.ok is True
        assert result.value == "3EB0"
        url = client.post.call_args[0][0]
        assert url == "http://evolution:8080/message/sendText/sales-1"
        assert client.post.call_args[1]["headers"]["apikey"] == "evo-key"
        assert client.post.call_args[1]["json"] == {"number": "5511999990000", "text": "Hi Joana!"}

    @patch("leadflow.services.sender_service.httpx.Client")
    def test_official(self, mock_client_class, official_connection):
        client = _client(mock_client_class, 200, {"messages": [{"id": "wamid.99"}]})

        result = send_text(official_connection, "5511988887777", "Hello Carlos")

        assert result.value == "wamid.99"
        assert client.post.call_args[0][0].endswith("/1122334455/messages")
        assert client.post.call_args[1]["headers"]["Authorization"] == "Bearer graph-token"
        assert client.post.call_args[1]["json"]["text"] == {"body": "Hello Carlos"}

    @patch("leadflow.services.sender_service.alert_error")
    @patch("leadflow.services.sender_service.httpx.Client")
    def test_provider_error(self, mock_client_class, mock_alert, evolution_connection):
        _client(mock_client_class, 500)

        result = send_text(evolution_connection, "5511", "hi")

        assert result.ok is False
        assert result.error_code == "send_failed"
        mock_alert.assert_called_once()

    @patch("leadflow.services.sender_service.alert_error")
    @patch("leadflow.services.sender_service.httpx.Client")
    def test_transport_error(self, mock_client_class, mock_alert, evolution_connection):
        client = _client(mock_client_class)
        client.post.side_effect = httpx.ReadTimeout("timed out")

        assert send_text(evolution_connection, "5511", "hi").error_code == "send_failed"

    def test_unconfigured(self, official_connection):
        official_connection.access_token = None
        assert send_text(official_connection, "5511", "hi").error_code == "not_configured"

    def test_empty_text(self, evolution_connection):
        assert send_text(evolution_connection, "5511", "").error_code == "invalid_request"
