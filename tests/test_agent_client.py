"""Tests for the agent HTTP client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import httpx
import pytest

from src.services.agent_client import (
    INITIAL_BACKOFF_SECONDS,
    MAX_RETRIES,
    AgentClient,
    AgentServiceError,
    build_agent_metadata,
    extract_reply,
)
from src.templates import AGENT_FALLBACK_REPLY

# ── Helpers ──────────────────────────────────────────────────────────


def _mock_response(data, status_code: int = 200) -> MagicMock:
    mock = MagicMock()
    mock.status_code = status_code
    mock.json.return_value = data
    mock.text = str(data)
    return mock


# ── Tests: payload and reply shape ───────────────────────────────────


class TestBuildAgentMetadata:
    def test_includes_every_block(self):
        user = {"profile": {"id": "u1", "language": "es"}}
        history = [{"role": "agent", "content": "Hey, did you take your vitamins today?"}]
        metadata = build_agent_metadata(user, history, template_context={"templateName": "x"})
        assert metadata == {
            "user": user,
            "templateContext": {"templateName": "x"},
            "conversationHistory": history,
            "language": "es",
        }

    def test_language_defaults_to_english(self):
        assert build_agent_metadata(None, [])["language"] == "en"

    def test_explicit_language_wins(self):
        user = {"profile": {"language": "es"}}
        assert build_agent_metadata(user, [], language="pt")["language"] == "pt"


class TestExtractReply:
    def test_prefers_first_response(self):
        assert extract_reply({"responses": ["first", "second"], "response": "old"}) == "first"

    def test_falls_back_to_single_response(self):
        assert extract_reply({"response": "old style"}) == "old style"

    def test_fallback_reply(self):
        assert extract_reply({}) == AGENT_FALLBACK_REPLY
        assert extract_reply({"responses": []}) == AGENT_FALLBACK_REPLY


# ── Tests: ask ───────────────────────────────────────────────────────


class TestAsk:
    def test_posts_text_and_metadata(self):
        client = AgentClient(base_url="http://agent.test")
        metadata = build_agent_metadata(None, [])

        with patch.object(
            client._client, "request", return_value=_mock_response({"responses": ["Hi Rosa!"]}),
        ) as mock_req:
            assert client.ask("hello", metadata) == "Hi Rosa!"
            args, kwargs = mock_req.call_args
            assert args == ("POST", "/ask")
            assert kwargs["json"] == {"text": "hello", "metadata": metadata}

    def test_invalid_json_raises(self):
        client = AgentClient(base_url="http://agent.test")
        response = _mock_response(None)
        response.json.side_effect = ValueError("Expecting value")

        with patch.object(client._client, "request", return_value=response):
            with pytest.raises(AgentServiceError) as exc_info:
                client.ask("hello", {})
            assert "invalid JSON" in str(exc_info.value)


# ── Tests: retry logic ───────────────────────────────────────────────


class TestRetryLogic:
    @patch("src.services.agent_client.time.sleep")
    def test_retries_on_timeout(self, mock_sleep):
        client = AgentClient(base_url="http://agent.test")

        with patch.object(
            client._client,
            "request",
            side_effect=[
                httpx.TimeoutException("timeout"),
                _mock_response({"responses": ["ok"]}),
            ],
        ):
            assert client.ask("hello", {}) == "ok"
            mock_sleep.assert_called_once_with(INITIAL_BACKOFF_SECONDS)

    @patch("src.services.agent_client.time.sleep")
    def test_retries_on_500_error(self, mock_sleep):
        client = AgentClient(base_url="http://agent.test")

        with patch.object(
            client._client,
            "request",
            side_effect=[
                _mock_response({"error": "Internal Server Error"}, 500),
                _mock_response({"response": "ok"}),
            ],
        ):
            assert client.ask("hello", {}) == "ok"

    @patch("src.services.agent_client.time.sleep")
    def test_does_not_retry_on_400_error(self, mock_sleep):
        client = AgentClient(base_url="http://agent.test")

        with patch.object(
            client._client, "request", return_value=_mock_response({"error": "Bad"}, 400),
        ):
            with pytest.raises(AgentServiceError) as exc_info:
                client.ask("hello", {})
            assert exc_info.value.status_code == 400
            mock_sleep.assert_not_called()

    @patch("src.services.agent_client.time.sleep")
    def test_raises_after_max_retries(self, mock_sleep):
        client = AgentClient(base_url="http://agent.test")

        with patch.object(
            client._client,
            "request",
            side_effect=httpx.ConnectError("refused"),
        ) as mock_req:
            with pytest.raises(AgentServiceError) as exc_info:
                client.ask("hello", {})
            assert "after" in str(exc_info.value).lower()
            assert mock_req.call_count == MAX_RETRIES
            # No sleep after the final attempt
            assert mock_sleep.call_count == MAX_RETRIES - 1
