"""WhatsApp messaging through Twilio.

Two kinds of outbound send exist: content-template sends (reminders,
welcomes, confirmations) addressed by a content SID and filled with
string-keyed variables, and free-text sends (agent replies, the
unregistered greeting, the invite flow).  Both return the Twilio message
SID or raise ``MessagingError``.

Inbound webhooks are authenticated with ``validate_request``, which checks
Twilio's HMAC signature over the exact callback URL and form fields.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping

from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.request_validator import RequestValidator
from twilio.rest import Client

from src.config import (
    TWILIO_ACCOUNT_SID,
    TWILIO_AUTH_TOKEN,
    TWILIO_MESSAGING_SERVICE_SID,
    TWILIO_TIMEOUT_SECONDS,
    TWILIO_WHATSAPP_FROM,
)
from src.services.metrics import metrics
from src.services.session_keys import mask_phone

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = "whatsapp:"


class MessagingError(Exception):
    """Raised when Twilio rejects or fails a send."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


def whatsapp_address(phone: str) -> str:
    return phone if phone.startswith(WHATSAPP_PREFIX) else f"{WHATSAPP_PREFIX}{phone}"


def strip_whatsapp_prefix(address: str) -> str:
    return address.removeprefix(WHATSAPP_PREFIX).strip()


class TwilioMessenger:
    """Thin wrapper around ``twilio.rest.Client`` for WhatsApp sends."""

    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        *,
        from_number: str | None = None,
        messaging_service_sid: str | None = None,
        timeout: float = TWILIO_TIMEOUT_SECONDS,
        client: Client | None = None,
    ):
        self._account_sid = account_sid or TWILIO_ACCOUNT_SID
        self._auth_token = auth_token or TWILIO_AUTH_TOKEN
        self._from = whatsapp_address(from_number or TWILIO_WHATSAPP_FROM)
        self._messaging_service_sid = messaging_service_sid or TWILIO_MESSAGING_SERVICE_SID
        self._client = client or Client(
            self._account_sid,
            self._auth_token,
            http_client=TwilioHttpClient(timeout=timeout),
        )
        self._validator = RequestValidator(self._auth_token)

    def _create(self, operation: str, to: str, **fields) -> str:
        params = {"from_": self._from, "to": whatsapp_address(to), **fields}
        if self._messaging_service_sid:
            params["messaging_service_sid"] = self._messaging_service_sid

        try:
            with metrics.timed("twilio", operation):
                message = self._client.messages.create(**params)
        except TwilioRestException as exc:
            logger.error(
                "Twilio %s to %s failed (%s): %s",
                operation, mask_phone(to), exc.status, exc.msg,
            )
            raise MessagingError(f"Twilio {operation} failed: {exc.msg}", status_code=exc.status) from exc

        logger.info("Twilio %s sent to %s: %s", operation, mask_phone(to), message.sid)
        return message.sid

    def send_template(
        self,
        content_sid: str,
        to: str,
        variables: Mapping[str, str] | None = None,
    ) -> str:
        """Send a content-template message.

        *variables* fills the template slots; keys are the slot numbers as
        strings (``{"1": "Vitamin D"}``).
        """
        fields = {"content_sid": content_sid}
        if variables:
            fields["content_variables"] = json.dumps({str(k): str(v) for k, v in variables.items()})
        return self._create("template", to, **fields)

    def send_text(self, to: str, body: str) -> str:
        return self._create("text", to, body=body)

    def validate_request(
        self,
        url: str,
        params: Mapping[str, str],
        signature: str | None,
    ) -> bool:
        if not signature:
            return False
        return bool(self._validator.validate(url, dict(params), signature))

    def close(self) -> None:
        # The Twilio client holds a requests.Session inside its http client
        session = getattr(self._client.http_client, "session", None)
        if session is not None:
            session.close()
