"""Bridge between inbound WhatsApp messages and the external agent.

``handle_inbound`` is what the Twilio webhook calls; ``ask`` is the part
shared with ``POST /api/agent``.  Both are synchronous and are run in a
worker thread by the routes.

Inbound decision order:

1. a phone with no matching user gets the sign-up greeting;
2. a family-invite quick reply (the ``INVITE_FAMILY`` button, or a "yes"
   to a welcome template) gets the two invite messages;
3. anything else goes to the agent and the reply is relayed back; when
   the agent is unreachable the user gets a short apology instead.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from neo4j.exceptions import DriverError, Neo4jError
from redis.exceptions import RedisError

from src.config import CONVERSATION_HISTORY_LIMIT
from src.services.agent_client import AgentServiceError, build_agent_metadata
from src.services.memory import ChatMessage
from src.services.messaging import strip_whatsapp_prefix
from src.services.session_keys import IdentityBundle, mask_phone
from src.templates import (
    AGENT_UNAVAILABLE_REPLY,
    invite_family_messages,
    unregistered_user_message,
)

logger = logging.getLogger(__name__)

INVITE_PAYLOAD = "INVITE_FAMILY"
_AFFIRMATIVE = {"yes", "y", "yeah", "yep", "si", "sí"}
_PUNCTUATION = re.compile(r"[^\w\s]")


@dataclass(frozen=True)
class InboundMessage:
    """The Twilio webhook fields Poppa acts on."""

    phone: str
    body: str = ""
    button_text: str | None = None
    button_payload: str | None = None
    template_name: str | None = None

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> InboundMessage:
        def _field(name: str) -> str | None:
            value = form.get(name)
            return str(value).strip() if value else None

        return cls(
            phone=strip_whatsapp_prefix(str(form.get("From") or "")),
            body=_field("Body") or "",
            button_text=_field("ButtonText"),
            button_payload=_field("ButtonPayload"),
            template_name=_field("TemplateName"),
        )

    @property
    def text(self) -> str:
        """What the user said: the typed body, else the tapped button label."""
        return self.body or self.button_text or ""

    @property
    def is_template_reply(self) -> bool:
        return bool(self.button_payload or self.template_name)

    @property
    def button_response(self) -> dict[str, str | None] | None:
        if not (self.button_text or self.button_payload):
            return None
        return {"text": self.button_text, "payload": self.button_payload}

    @property
    def template_context(self) -> dict[str, Any] | None:
        if not self.is_template_reply:
            return None
        return {
            "templateName": self.template_name,
            "buttonText": self.button_text,
            "buttonPayload": self.button_payload,
        }


def is_invite_request(message: InboundMessage) -> bool:
    """The invite button, or a bare "yes" to the welcome prompt.

    Quick-reply taps usually arrive without ``TemplateName``, so an
    affirmative button tap counts unless it is tagged with some other
    template.
    """
    if message.button_payload == INVITE_PAYLOAD:
        return True
    answer = _PUNCTUATION.sub("", message.text).strip().lower()
    if answer not in _AFFIRMATIVE:
        return False
    if message.template_name:
        return "welcome" in message.template_name.lower()
    return bool(message.button_payload or message.button_text)


@dataclass(frozen=True)
class AgentReply:
    response: str
    user_found: bool
    history_length: int


class WebhookBridge:
    """Routes inbound messages and relays agent replies over WhatsApp."""

    def __init__(
        self,
        store,
        memory,
        messenger,
        agent,
        *,
        history_limit: int = CONVERSATION_HISTORY_LIMIT,
    ):
        self._store = store
        self._memory = memory
        self._messenger = messenger
        self._agent = agent
        self._history_limit = history_limit

    def ask(
        self,
        text: str,
        phone: str,
        template_context: dict[str, Any] | None = None,
    ) -> AgentReply:
        """Send *text* to the agent with the user's context and cached history.

        Both turns are appended to the cache once the agent answers.
        Raises ``AgentServiceError`` when the agent is unreachable.
        """
        user = self._store.get_user_metadata(phone)
        identity = self._identity(phone, user)

        history = self._memory.load(identity, self._history_limit)
        metadata = build_agent_metadata(
            user,
            [m.model_dump() for m in history],
            template_context=template_context,
        )
        response = self._agent.ask(text, metadata)

        try:
            self._memory.append(
                identity,
                [ChatMessage(role="user", content=text), ChatMessage(role="agent", content=response)],
            )
        except RedisError:
            logger.warning("Could not cache agent turn for %s", mask_phone(phone), exc_info=True)

        logger.info(
            "Agent replied to %s (user_found=%s, history=%d)",
            mask_phone(phone), user is not None, len(history),
        )
        return AgentReply(response=response, user_found=user is not None, history_length=len(history))

    def handle_inbound(self, message: InboundMessage) -> dict[str, Any]:
        if not message.phone:
            raise ValueError("Inbound message has no sender")

        user = self._store.find_user_by_phone(message.phone)
        if user is None:
            logger.info("Unregistered sender %s; sending sign-up greeting", mask_phone(message.phone))
            self._messenger.send_text(message.phone, unregistered_user_message())
            return {"success": True, "action": "unregistered"}

        if is_invite_request(message):
            logger.info("Invite flow requested by %s", mask_phone(message.phone))
            for body in invite_family_messages():
                self._messenger.send_text(message.phone, body)
            return {"success": True, "action": "invite"}

        try:
            reply = self.ask(message.text, message.phone, message.template_context)
        except AgentServiceError as exc:
            logger.error(
                "Agent unavailable for %s (status=%s): %s",
                mask_phone(message.phone), exc.status_code, exc,
            )
            message_id = self._messenger.send_text(message.phone, AGENT_UNAVAILABLE_REPLY)
            self._audit(message, AGENT_UNAVAILABLE_REPLY)
            return {"success": False, "action": "agent_unavailable", "messageId": message_id}

        message_id = self._messenger.send_text(message.phone, reply.response)
        self._audit(message, reply.response)
        return {"success": True, "action": "agent", "messageId": message_id}

    @staticmethod
    def _identity(phone: str, user: Mapping[str, Any] | None) -> IdentityBundle:
        # History is keyed to the number the message came from.
        known = IdentityBundle.from_metadata({"metadata": {"user": user}})
        return IdentityBundle(phone=phone, user_id=known.user_id, whatsapp_id=known.whatsapp_id)

    def _audit(self, message: InboundMessage, response: str) -> None:
        try:
            self._store.store_conversation(
                message.phone,
                message.text,
                is_template=message.is_template_reply,
                template_type=message.template_name,
                response=response,
                button_response=message.button_response,
            )
        except (Neo4jError, DriverError):
            logger.warning("Could not record conversation for %s", mask_phone(message.phone))
