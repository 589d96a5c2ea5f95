"""Canonical Redis keys for a user's conversation history.

Precedence, highest first:

1. a ``thread_id`` that is already a ``chat:`` key is returned unchanged,
2. the phone number (digits only)      → ``chat:phone:<digits>``,
3. the internal user id                → ``chat:user:<id>``,
4. the WhatsApp id                     → ``chat:whatsapp:<id>``,
5. the session id, else ``"default"``  → ``chat:session:<id>``.

Phone wins over user id so that history keys to the identifier the user
actually messages from.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

KEY_PREFIX = "chat:"
DEFAULT_SESSION = "default"

_NON_DIGITS = re.compile(r"[^0-9]")


def phone_digits(phone: str | None) -> str:
    return _NON_DIGITS.sub("", phone or "")


def mask_phone(phone: str | None) -> str:
    """Last four digits only, for logs."""
    return f"…{phone[-4:]}" if phone else "<none>"


@dataclass(frozen=True)
class IdentityBundle:
    """Whatever is known about who a conversation belongs to."""

    thread_id: str | None = None
    phone: str | None = None
    user_id: str | None = None
    whatsapp_id: str | None = None

    @classmethod
    def from_metadata(cls, payload: Mapping[str, Any] | None) -> IdentityBundle:
        """Build a bundle from ``{thread_id, metadata: {user: {...}}}``.

        The agent payloads carry this loosely-shaped dict; missing or
        non-dict levels are treated as empty.
        """
        payload = payload or {}
        metadata = _mapping(payload.get("metadata"))
        user = _mapping(metadata.get("user"))
        profile = _mapping(user.get("profile"))
        return cls(
            thread_id=_text(payload.get("thread_id")),
            phone=_text(profile.get("phone")),
            user_id=_text(profile.get("id")),
            whatsapp_id=_text(user.get("whatsapp_id")),
        )


def derive_key(bundle: IdentityBundle) -> str:
    if bundle.thread_id and bundle.thread_id.startswith(KEY_PREFIX):
        return bundle.thread_id

    digits = phone_digits(bundle.phone)
    if digits:
        return f"{KEY_PREFIX}phone:{digits}"
    if bundle.user_id:
        return f"{KEY_PREFIX}user:{bundle.user_id}"
    if bundle.whatsapp_id:
        return f"{KEY_PREFIX}whatsapp:{bundle.whatsapp_id}"
    return f"{KEY_PREFIX}session:{bundle.thread_id or DEFAULT_SESSION}"


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)
