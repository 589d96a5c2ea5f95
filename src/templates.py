"""WhatsApp notification templates and the free-text copy Poppa sends."""

from __future__ import annotations

from enum import Enum

from src import config


class NotificationType(str, Enum):
    MEDICATION_REMINDER = "MEDICATION_REMINDER"
    WELCOME_ELDER = "WELCOME_ELDER"
    WELCOME_CARETAKER = "WELCOME_CARETAKER"
    MEDICATION_CONFIRMATION_AM = "MEDICATION_CONFIRMATION_AM"
    MEDICATION_CONFIRMATION_PM = "MEDICATION_CONFIRMATION_PM"
    UNREGISTERED_USER = "UNREGISTERED_USER"
    INVITE_FAMILY_FIRST = "INVITE_FAMILY_FIRST"
    INVITE_FAMILY_SECOND = "INVITE_FAMILY_SECOND"


# (config attribute holding the content template id, description)
_TEMPLATES: dict[NotificationType, tuple[str | None, str]] = {
    NotificationType.MEDICATION_REMINDER: (
        "TWILIO_MEDICATION_CONTENT_SID",
        "Medication reminder listing the doses due shortly",
    ),
    NotificationType.WELCOME_ELDER: (
        "TWILIO_WELCOME_ELDER_CONTENT_SID",
        "Welcome message sent to new elderly users",
    ),
    NotificationType.WELCOME_CARETAKER: (
        "TWILIO_WELCOME_CARETAKER_CONTENT_SID",
        "Welcome message sent to new caretaker users",
    ),
    NotificationType.MEDICATION_CONFIRMATION_AM: (
        "TWILIO_MED_CONFIRMATION_AM_SID",
        "Morning medication confirmation check",
    ),
    NotificationType.MEDICATION_CONFIRMATION_PM: (
        "TWILIO_MED_CONFIRMATION_PM_SID",
        "Evening medication confirmation check",
    ),
    NotificationType.UNREGISTERED_USER: (None, "Welcome message sent to unregistered users"),
    NotificationType.INVITE_FAMILY_FIRST: (None, "First message in the invite family flow"),
    NotificationType.INVITE_FAMILY_SECOND: (None, "Second message in the invite family flow"),
}


def describe(notification: NotificationType) -> str:
    return _TEMPLATES[notification][1]


def content_sid(notification: NotificationType) -> str:
    """Return the content template id for *notification*.

    Raises ``OSError`` when the template is free-text only or its id is
    not configured, so a misconfigured send fails before reaching Twilio.
    """
    attr, _ = _TEMPLATES[notification]
    if attr is None:
        raise OSError(f"{notification.value} is a free-text message and has no content template.")
    value = getattr(config, attr)
    if not value:
        raise OSError(
            f"Missing required configuration: {attr} "
            f"(content template for {notification.value})."
        )
    return value


# ── Free-text copy ──────────────────────────────────────────────────

REMINDER_HEADER = "Hey, did you take your vitamins today?"

AGENT_FALLBACK_REPLY = "I'm sorry, I couldn't process that message."
AGENT_UNAVAILABLE_REPLY = "I'm sorry, I'm having trouble right now. Please try again later."

INVITE_FAMILY_INTRO = "Great! Forward the following message to the person you want to invite"


def unregistered_user_message() -> str:
    return f"Hey, I'm Poppa! Visit {config.SIGNUP_URL} to get started"


def invite_family_messages() -> list[str]:
    return [INVITE_FAMILY_INTRO, config.INVITE_LINK]


def format_medication_list(names: list[str], numbered: bool = False) -> str:
    """Render medication names for the single template variable slot.

    >>> format_medication_list(["Vitamin D", "Aspirin"], numbered=True)
    '1. Vitamin D\\n2. Aspirin'
    """
    if numbered:
        return "\n".join(f"{i}. {name}" for i, name in enumerate(names, start=1))
    return "\n".join(names)


def reminder_text(names: list[str]) -> str:
    """Text recorded in the conversation cache when a reminder goes out."""
    return "\n".join([REMINDER_HEADER, *names])
