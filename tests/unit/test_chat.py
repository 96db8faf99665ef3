"""Unit tests for the chat-completion client."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from ragindex.llm.chat import ChatEndpointClient, _is_retryable, create_chat_model
from ragindex.retrieval.retry import BackoffPolicy

URL = "http://llm.test/v1/chat/completions"


def completion(content: str) -> MagicMock:
    response = MagicMock()
    response.status_code = 200
    response.json.return_value = {"choices": [{"message": {"content": content}}]}
    response.elapsed.total_seconds.return_value = 0.25
    return response


def http_error(status: int) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.reason = "Bad Gateway"
    response.raise_for_status.side_effect = requests.HTTPError(response=response)
    return response


@pytest.fixture
def client():
    sleeps = []
    policy = BackoffPolicy(
        max_attempts=3,
        base_delay=2.0,
        jitter=0.0,
        should_retry=_is_retryable,
        sleep=sleeps.append,
    )
    client = ChatEndpointClient(URL, temperature=0.2, max_tokens=64, policy=policy)
    client.sleeps = sleeps
    return client


@pytest.mark.unit
class TestChatEndpointClient:
    @patch("ragindex.llm.chat.requests.post")
    def test_chat_returns_content(self, mock_post, client):
        mock_post.return_value = completion("Paris")
        messages = [{"role": "user", "content": "Capital of France?"}]

        assert client.chat(messages) == "Paris"
        mock_post.assert_called_once_with(
            URL,
            json={"messages": messages, "temperature": 0.2, "max_tokens": 64},
            timeout=120,
        )

    @patch("ragindex.llm.chat.requests.post")
    def test_retries_gateway_errors(self, mock_post, client):
        mock_post.side_effect = [http_error(503), http_error(502), completion("done")]

        assert client.chat([{"role": "user", "content": "x"}]) == "done"
        assert client.sleeps == [2.0, 4.0]

    @patch("ragindex.llm.chat.requests.post")
    def test_retries_connection_errors(self, mock_post, client):
        mock_post.side_effect = [requests.ConnectionError("refused"), completion("done")]

        assert client.chat([{"role": "user", "content": "x"}]) == "done"

    @patch("ragindex.llm.chat.requests.post")
    def test_client_errors_not_retried(self, mock_post, client):
        mock_post.return_value = http_error(400)

        with pytest.raises(requests.HTTPError):
            client.chat([{"role": "user", "content": "x"}])
        assert mock_post.call_count == 1

    @patch("ragindex.llm.chat.requests.post")
    def test_gives_up_after_max_attempts(self, mock_post, client):
        mock_post.side_effect = [http_error(504)] * 3

        with pytest.raises(requests.HTTPError):
            client.chat([{"role": "user", "content": "x"}])
        assert mock_post.call_count == 3

    @patch("ragindex.llm.chat.requests.post")
    def test_health_check_ok(self, mock_post, client):
        mock_post.return_value = completion("t")

        healthy, message = client.health_check()

        assert healthy is True
        assert "0.25s" in message

    @patch("ragindex.llm.chat.requests.post")
    def test_health_check_timeout(self, mock_post, client):
        mock_post.side_effect = requests.Timeout()

        healthy, message = client.health_check(timeout=5)

        assert healthy is False
        assert "5s" in message

    @patch("ragindex.llm.chat.requests.post")
    def test_health_check_bad_structure(self, mock_post, client):
        response = completion("t")
        response.json.return_value = {"unexpected": True}
        mock_post.return_value = response

        assert client.health_check()[0] is False


@pytest.mark.unit
class TestCreateChatModel:
    def test_none_without_endpoint(self, mock_settings):
        assert create_chat_model(mock_settings) is None

    def test_uses_settings(self, mock_settings):
        settings = mock_settings.model_copy(update={"chat_endpoint_url": URL, "llm_temperature": 0.5})

        model = create_chat_model(settings)

        assert isinstance(model, ChatEndpointClient)
        assert model.endpoint_url == URL
        assert model.temperature == 0.5
        assert model.max_tokens == settings.llm_max_tokens
