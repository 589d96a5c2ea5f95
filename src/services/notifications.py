"""Outbound notification fan-out: dose reminders, confirmations, welcomes.

Every batch follows the same shape: resolve the recipients, then run one
unit of work per user concurrently.  A unit converts its own failure into
an error ``NotificationResult``, so one bad phone number or one Twilio
rejection never stops the rest of the batch.  Units run in worker threads
because the store, cache and Twilio clients are blocking.

Per-user reminder unit, in order:

1. reject a user without a phone number,
2. append the reminder text to the user's conversation cache as an
   ``agent`` turn, so the next inbound reply has context (a cache outage
   is logged and the send still goes out),
3. send the ``MEDICATION_REMINDER`` template,
4. record the send as a template ``Conversation`` in the graph.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from neo4j.exceptions import DriverError, Neo4jError
from redis.exceptions import RedisError

from src.config import (
    ALLOW_NOTIFICATION_TEST_MODE,
    NUMBERED_REMINDER_LIST,
    REMINDER_LOOKAHEAD_MINUTES,
)
from src.services.memory import ChatMessage
from src.services.messaging import MessagingError
from src.services.metrics import metrics
from src.services.schedule import (
    DueMedication,
    confirmation_period,
    now_local,
    parse_time_of_day,
    period_for_hour,
    resolve_due,
    users_due_in_period,
)
from src.services.session_keys import IdentityBundle, mask_phone
from src.templates import (
    NotificationType,
    content_sid,
    format_medication_list,
    reminder_text,
)

logger = logging.getLogger(__name__)

WELCOME_TEMPLATES = {
    "elder": NotificationType.WELCOME_ELDER,
    "caretaker": NotificationType.WELCOME_CARETAKER,
}

CONFIRMATION_TEMPLATES = {
    "AM": NotificationType.MEDICATION_CONFIRMATION_AM,
    "PM": NotificationType.MEDICATION_CONFIRMATION_PM,
}


@dataclass
class NotificationResult:
    user_id: str
    status: Literal["success", "error"]
    error: str | None = None
    message_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"userId": self.user_id, "status": self.status}
        if self.error is not None:
            data["error"] = self.error
        if self.message_id is not None:
            data["messageId"] = self.message_id
        return data


@dataclass
class UserReminder:
    phone: str
    medication_names: list[str] = field(default_factory=list)


def group_by_user(due: Iterable[DueMedication]) -> dict[str, UserReminder]:
    """Collapse due doses into one reminder per user, first-seen order.

    The first non-empty phone wins; each medication is listed once even
    when several of its doses fall inside the window.
    """
    grouped: dict[str, UserReminder] = {}
    for item in due:
        reminder = grouped.setdefault(item.user_id, UserReminder(phone=item.phone))
        if not reminder.phone and item.phone:
            reminder.phone = item.phone
        if item.medication_name not in reminder.medication_names:
            reminder.medication_names.append(item.medication_name)
    return grouped


class NotificationDispatcher:
    """Runs reminder, confirmation and welcome sends against injected services."""

    def __init__(
        self,
        store,
        memory,
        messenger,
        *,
        clock: Callable[[], datetime] = now_local,
        look_ahead_minutes: int = REMINDER_LOOKAHEAD_MINUTES,
        numbered_list: bool = NUMBERED_REMINDER_LIST,
        allow_test_mode: bool = ALLOW_NOTIFICATION_TEST_MODE,
    ):
        self._store = store
        self._memory = memory
        self._messenger = messenger
        self._clock = clock
        self._look_ahead = look_ahead_minutes
        self._numbered = numbered_list
        self._allow_test_mode = allow_test_mode

    @property
    def test_mode_allowed(self) -> bool:
        return self._allow_test_mode

    # ── Dose reminders ───────────────────────────────────────────────

    async def run_due_reminders(
        self,
        now: datetime | None = None,
        look_ahead_minutes: int | None = None,
    ) -> list[NotificationResult]:
        """Send one reminder to every user with doses due in the window."""
        now = now or self._clock()
        window = self._look_ahead if look_ahead_minutes is None else look_ahead_minutes
        entries = await asyncio.to_thread(self._store.list_schedule_entries)
        due = resolve_due(entries, now, window)
        return await self.dispatch(due)

    async def dispatch(self, due: Iterable[DueMedication]) -> list[NotificationResult]:
        grouped = group_by_user(due)
        if not grouped:
            logger.info("No medication reminders to send")
            return []

        logger.info("Sending medication reminders to %d user(s)", len(grouped))
        results = await self._fan_out(
            [(user_id, self._remind_user, user_id, reminder) for user_id, reminder in grouped.items()]
        )
        self._record("medication_reminder", results)
        return results

    def _remind_user(self, user_id: str, reminder: UserReminder) -> NotificationResult:
        if not reminder.phone:
            logger.warning("User %s has due medications but no phone number", user_id)
            return NotificationResult(user_id, "error", "No phone number")

        text = reminder_text(reminder.medication_names)
        try:
            self._memory.append(
                IdentityBundle(phone=reminder.phone, user_id=user_id),
                [ChatMessage(role="agent", content=text)],
            )
        except RedisError:
            logger.warning(
                "Could not cache reminder for user %s; sending anyway", user_id, exc_info=True,
            )

        try:
            message_id = self._messenger.send_template(
                content_sid(NotificationType.MEDICATION_REMINDER),
                reminder.phone,
                {"1": format_medication_list(reminder.medication_names, self._numbered)},
            )
        except (MessagingError, OSError) as exc:
            logger.error("Reminder to user %s failed: %s", user_id, exc)
            return NotificationResult(user_id, "error", str(exc))

        self._audit(reminder.phone, text, NotificationType.MEDICATION_REMINDER)
        return NotificationResult(user_id, "success", message_id=message_id)

    # ── Twice-daily confirmation ─────────────────────────────────────

    async def run_confirmation(
        self,
        now: datetime | None = None,
        override: str | None = None,
    ) -> list[NotificationResult]:
        """Ask every user with doses in the current half-day whether they took them.

        Runs only on the AM/PM checkpoint minute.  *override* (``"HH:MM"``)
        bypasses the checkpoint and picks the period from its hour, when
        test mode is allowed; a malformed override raises ``ValueError``.
        """
        now = now or self._clock()
        if override is not None and self._allow_test_mode:
            period = period_for_hour(parse_time_of_day(override) // 60)
            logger.info("Confirmation test override %s → %s", override, period)
        else:
            if override is not None:
                logger.warning("Ignoring confirmation override %s: test mode disabled", override)
            period = confirmation_period(now)
            if period is None:
                logger.info("%s is not a confirmation checkpoint", now.strftime("%H:%M"))
                return []

        entries = await asyncio.to_thread(self._store.list_schedule_entries)
        users = users_due_in_period(entries, now, period)
        if not users:
            logger.info("No users due for the %s confirmation", period)
            return []

        notification = CONFIRMATION_TEMPLATES[period]
        results = await self._fan_out(
            [(user["user_id"], self._confirm_user, user, notification) for user in users]
        )
        self._record(notification.value.lower(), results)
        return results

    def _confirm_user(self, user: dict[str, str], notification: NotificationType) -> NotificationResult:
        user_id, phone = user["user_id"], user["phone"]
        if not phone:
            return NotificationResult(user_id, "error", "No phone number")
        try:
            message_id = self._messenger.send_template(
                content_sid(notification), phone, {"1": user["first_name"] or ""},
            )
        except (MessagingError, OSError) as exc:
            logger.error("Confirmation to user %s failed: %s", user_id, exc)
            return NotificationResult(user_id, "error", str(exc))

        self._audit(phone, user["first_name"] or "", notification)
        return NotificationResult(user_id, "success", message_id=message_id)

    # ── Onboarding ───────────────────────────────────────────────────

    async def send_welcome(self, role: str, phone: str, user_name: str) -> str:
        """Send the onboarding welcome for *role*; returns the message SID.

        Raises ``ValueError`` for an unknown role and ``MessagingError`` when
        Twilio rejects the send.
        """
        notification = WELCOME_TEMPLATES.get(role.lower())
        if notification is None:
            raise ValueError(f"Unknown welcome role {role!r}")
        message_id = await asyncio.to_thread(
            self._messenger.send_template,
            content_sid(notification),
            phone,
            {"1": user_name},
        )
        logger.info("Welcome (%s) sent to %s", role, mask_phone(phone))
        await asyncio.to_thread(self._audit, phone, user_name, notification)
        return message_id

    # ── Internal helpers ─────────────────────────────────────────────

    async def _fan_out(self, units: list[tuple]) -> list[NotificationResult]:
        """Run ``(user_id, fn, *args)`` units concurrently in worker threads."""
        outcomes = await asyncio.gather(
            *(asyncio.to_thread(fn, *args) for _, fn, *args in units),
            return_exceptions=True,
        )
        results: list[NotificationResult] = []
        for (user_id, *_), outcome in zip(units, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Notification unit for user %s crashed: %r", user_id, outcome)
                results.append(NotificationResult(user_id, "error", str(outcome)))
            else:
                results.append(outcome)
        return results

    def _audit(self, phone: str, content: str, notification: NotificationType) -> None:
        try:
            self._store.store_conversation(
                phone,
                content,
                is_template=True,
                template_type=notification.value,
                template_content=content,
            )
        except (Neo4jError, DriverError):
            logger.warning("Could not record %s for %s", notification.value, mask_phone(phone))

    @staticmethod
    def _record(kind: str, results: list[NotificationResult]) -> None:
        sent = sum(1 for r in results if r.status == "success")
        metrics.record_dispatch(kind, sent=sent, failed=len(results) - sent)
        logger.info("%s batch: %d sent, %d failed", kind, sent, len(results) - sent)
