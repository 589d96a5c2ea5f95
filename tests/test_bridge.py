"""Tests for the WhatsApp/agent bridge."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.services.agent_client import AgentServiceError
from src.services.bridge import InboundMessage, WebhookBridge, is_invite_request
from src.services.memory import ChatMessage
from src.services.session_keys import IdentityBundle
from src.templates import AGENT_UNAVAILABLE_REPLY

PHONE = "+13055550100"
METADATA = {
    "profile": {"id": "u1", "firstName": "Rosa", "phone": PHONE, "language": "en"},
    "relationships": {"caretakers": [], "elders": []},
    "medications": [{"name": "Vitamin D"}],
}


@pytest.fixture
def store():
    store = MagicMock()
    store.find_user_by_phone.return_value = {"id": "u1", "phone": PHONE}
    store.get_user_metadata.return_value = METADATA
    return store


@pytest.fixture
def agent():
    agent = MagicMock()
    agent.ask.return_value = "Great job, Rosa!"
    return agent


@pytest.fixture
def bridge(store, mock_memory, mock_messenger, agent):
    return WebhookBridge(store, mock_memory, mock_messenger, agent, history_limit=10)


class TestInboundMessage:
    def test_from_form_strips_whatsapp_prefix(self):
        message = InboundMessage.from_form({"From": f"whatsapp:{PHONE}", "Body": "  Hi  "})
        assert message.phone == PHONE
        assert message.body == "Hi"
        assert message.button_response is None
        assert message.template_context is None

    def test_button_reply(self):
        message = InboundMessage.from_form({
            "From": f"whatsapp:{PHONE}",
            "Body": "",
            "ButtonText": "Yes",
            "ButtonPayload": "TOOK_MEDS",
        })
        assert message.text == "Yes"
        assert message.is_template_reply
        assert message.button_response == {"text": "Yes", "payload": "TOOK_MEDS"}


class TestInviteDetection:
    def test_invite_button(self):
        assert is_invite_request(InboundMessage(phone=PHONE, button_payload="INVITE_FAMILY"))

    def test_yes_to_welcome_template(self):
        message = InboundMessage(phone=PHONE, body="Yes!", template_name="welcome_elder")
        assert is_invite_request(message)

    def test_plain_yes_is_not_an_invite(self):
        assert not is_invite_request(InboundMessage(phone=PHONE, body="yes"))

    def test_yes_inside_a_sentence_is_not_an_invite(self):
        message = InboundMessage(phone=PHONE, body="yes I took them", template_name="welcome_elder")
        assert not is_invite_request(message)

    def test_yes_quick_reply_without_template_name(self):
        message = InboundMessage.from_form({
            "From": f"whatsapp:{PHONE}",
            "Body": "Yes!",
            "ButtonText": "Yes!",
            "ButtonPayload": "yes_button",
        })
        assert is_invite_request(message)

    def test_yes_button_on_another_template_is_not_an_invite(self):
        message = InboundMessage(
            phone=PHONE, body="Yes", button_payload="TOOK_MEDS", template_name="med_confirmation_am",
        )
        assert not is_invite_request(message)

    def test_free_text_yes_sentence_with_button_is_not_an_invite(self):
        message = InboundMessage(phone=PHONE, body="yes but what about tomorrow", button_payload="x")
        assert not is_invite_request(message)


class TestAsk:
    def test_sends_metadata_and_history_oldest_first(self, bridge, agent, mock_memory):
        history = [
            ChatMessage(role="agent", content="Hey, did you take your vitamins today?\nVitamin D"),
            ChatMessage(role="user", content="not yet"),
        ]
        mock_memory.load.return_value = history

        reply = bridge.ask("now I did", PHONE)

        assert reply.response == "Great job, Rosa!"
        assert reply.user_found is True
        assert reply.history_length == 2
        text, metadata = agent.ask.call_args.args
        assert text == "now I did"
        assert metadata["user"] == METADATA
        assert metadata["conversationHistory"][0]["role"] == "agent"
        assert metadata["language"] == "en"

    def test_appends_both_turns(self, bridge, mock_memory):
        bridge.ask("hello", PHONE)
        identity, messages = mock_memory.append.call_args.args
        assert identity == IdentityBundle(phone=PHONE, user_id="u1")
        assert [(m.role, m.content) for m in messages] == [
            ("user", "hello"),
            ("agent", "Great job, Rosa!"),
        ]

    def test_history_key_uses_sender_phone_and_profile_ids(self, bridge, store, mock_memory):
        store.get_user_metadata.return_value = {
            **METADATA,
            "profile": {**METADATA["profile"], "phone": "+13055559999"},
            "whatsapp_id": "wa-77",
        }
        bridge.ask("hello", PHONE)
        identity = mock_memory.load.call_args.args[0]
        assert identity == IdentityBundle(phone=PHONE, user_id="u1", whatsapp_id="wa-77")

    def test_unknown_user_still_reaches_agent(self, bridge, store):
        store.get_user_metadata.return_value = None
        reply = bridge.ask("hello", PHONE)
        assert reply.user_found is False

    def test_cache_failure_after_reply_is_tolerated(self, bridge, mock_memory):
        mock_memory.append.side_effect = RedisConnectionError("down")
        assert bridge.ask("hello", PHONE).response == "Great job, Rosa!"

    def test_agent_failure_propagates(self, bridge, agent, mock_memory):
        agent.ask.side_effect = AgentServiceError("Agent request failed after 3 attempts")
        with pytest.raises(AgentServiceError):
            bridge.ask("hello", PHONE)
        mock_memory.append.assert_not_called()


class TestHandleInbound:
    def test_unregistered_sender_gets_signup_link(self, bridge, store, mock_messenger, agent):
        store.find_user_by_phone.return_value = None
        result = bridge.handle_inbound(InboundMessage(phone=PHONE, body="hola"))

        assert result["success"] is True
        body = mock_messenger.send_text.call_args.args[1]
        assert body.startswith("Hey, I'm Poppa!")
        agent.ask.assert_not_called()

    def test_invite_flow_sends_two_messages(self, bridge, mock_messenger, agent):
        result = bridge.handle_inbound(InboundMessage(phone=PHONE, button_payload="INVITE_FAMILY"))
        assert result["action"] == "invite"
        assert mock_messenger.send_text.call_count == 2
        agent.ask.assert_not_called()

    def test_registered_user_gets_agent_reply(self, bridge, store, mock_messenger):
        result = bridge.handle_inbound(
            InboundMessage(phone=PHONE, button_text="Not yet", button_payload="NOT_YET"),
        )
        assert result == {"success": True, "action": "agent", "messageId": "SMtext"}
        mock_messenger.send_text.assert_called_once_with(PHONE, "Great job, Rosa!")
        kwargs = store.store_conversation.call_args.kwargs
        assert kwargs["is_template"] is True
        assert kwargs["response"] == "Great job, Rosa!"
        assert kwargs["button_response"] == {"text": "Not yet", "payload": "NOT_YET"}

    def test_template_context_is_forwarded(self, bridge, agent):
        bridge.handle_inbound(
            InboundMessage(phone=PHONE, body="yes", template_name="med_confirmation_am"),
        )
        metadata = agent.ask.call_args.args[1]
        assert metadata["templateContext"]["templateName"] == "med_confirmation_am"

    def test_missing_sender(self, bridge):
        with pytest.raises(ValueError):
            bridge.handle_inbound(InboundMessage(phone=""))

    def test_tapping_yes_on_welcome_starts_invite(self, bridge, mock_messenger, agent):
        message = InboundMessage.from_form({
            "From": f"whatsapp:{PHONE}",
            "Body": "Yes!",
            "ButtonText": "Yes!",
            "ButtonPayload": "yes_button",
        })
        result = bridge.handle_inbound(message)

        assert result == {"success": True, "action": "invite"}
        assert mock_messenger.send_text.call_count == 2
        first = mock_messenger.send_text.call_args_list[0].args[1]
        assert first.startswith("Great! Forward the following message")
        agent.ask.assert_not_called()

    def test_agent_outage_sends_apology_and_records_turn(self, bridge, store, agent, mock_messenger):
        agent.ask.side_effect = AgentServiceError("down", 503)

        result = bridge.handle_inbound(InboundMessage(phone=PHONE, body="what do I take tonight?"))

        assert result == {"success": False, "action": "agent_unavailable", "messageId": "SMtext"}
        mock_messenger.send_text.assert_called_once_with(PHONE, AGENT_UNAVAILABLE_REPLY)
        kwargs = store.store_conversation.call_args.kwargs
        assert kwargs["response"] == AGENT_UNAVAILABLE_REPLY
        assert store.store_conversation.call_args.args == (PHONE, "what do I take tonight?")
