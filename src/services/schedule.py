"""Medication schedules and due-window resolution.

Everything in this module is pure: the store hands over
``ScheduleEntry`` rows and a zone-aware ``now``, and the functions decide
which doses warrant a reminder.

Day matching
────────────
``TAKES.days`` is either ``["Everyday"]`` or a subset of
``{M, T, W, Th, F, Sa, Su}``.  A dose is scheduled on a day when the day's
abbreviation is a member of that set (or the set says every day).  Older
data written by the onboarding wizard used the same shape, so no
migration is needed.

Time zones
──────────
``now`` always comes from ``now_local()``, which reads the configured
``POPPA_TIMEZONE``; schedule strings are wall-clock times in that zone.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, Literal
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.config import POPPA_TIMEZONE

logger = logging.getLogger(__name__)

EVERYDAY = "Everyday"

# Indexed by ``date.weekday()`` (Monday == 0)
WEEKDAY_ABBREVIATIONS: tuple[str, ...] = ("M", "T", "W", "Th", "F", "Sa", "Su")

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

MINUTES_PER_DAY = 24 * 60

Period = Literal["AM", "PM"]

# Twice-daily confirmation checkpoints (local wall-clock)
CONFIRMATION_CHECKPOINTS: dict[str, time] = {
    "AM": time(11, 59),
    "PM": time(22, 0),
}


# ── Types ────────────────────────────────────────────────────────────


class MedicationSchedule(BaseModel):
    """Shape of the ``TAKES`` relationship.

    One entry of ``schedule`` per daily dose, with the matching
    ``pills_per_dose`` at the same index.
    """

    model_config = ConfigDict(populate_by_name=True)

    schedule: list[str] = Field(..., min_length=1)
    pills_per_dose: list[int] = Field(..., alias="pillsPerDose", min_length=1)
    days: list[str] = Field(default_factory=lambda: [EVERYDAY], min_length=1)
    frequency: int = Field(..., ge=1)
    dosage: str = ""

    @field_validator("schedule")
    @classmethod
    def _check_times(cls, value: list[str]) -> list[str]:
        for entry in value:
            parse_time_of_day(entry)
        return value

    @field_validator("pills_per_dose")
    @classmethod
    def _check_pills(cls, value: list[int]) -> list[int]:
        if any(p <= 0 for p in value):
            raise ValueError("pillsPerDose entries must be positive integers")
        return value

    @field_validator("days")
    @classmethod
    def _check_days(cls, value: list[str]) -> list[str]:
        if value == [EVERYDAY]:
            return value
        unknown = [d for d in value if d not in WEEKDAY_ABBREVIATIONS]
        if unknown:
            raise ValueError(f"Unknown day abbreviations: {unknown}")
        if len(set(value)) != len(value):
            raise ValueError("days must not contain duplicates")
        return value

    @model_validator(mode="after")
    def _check_lengths(self) -> MedicationSchedule:
        if not (len(self.schedule) == len(self.pills_per_dose) == self.frequency):
            raise ValueError(
                "schedule, pillsPerDose and frequency disagree: "
                f"{len(self.schedule)} times, {len(self.pills_per_dose)} doses, "
                f"frequency {self.frequency}"
            )
        return self

    def to_properties(self) -> dict[str, Any]:
        """Relationship properties as persisted in the graph."""
        return {
            "schedule": list(self.schedule),
            "pillsPerDose": list(self.pills_per_dose),
            "days": list(self.days),
            "frequency": self.frequency,
            "dosage": self.dosage,
        }


@dataclass
class ScheduleEntry:
    """One ``(User)-[:TAKES]->(Medication)`` triple."""

    user_id: str
    phone: str
    medication_id: str
    medication_name: str
    schedule: list[str]
    pills_per_dose: list[int] = field(default_factory=list)
    days: list[str] = field(default_factory=lambda: [EVERYDAY])
    first_name: str = ""


@dataclass(frozen=True)
class DueMedication:
    user_id: str
    medication_name: str
    phone: str
    scheduled_time: str
    medication_id: str = ""
    pills: int | None = None


# ── Helpers ──────────────────────────────────────────────────────────


def now_local(tz_name: str | None = None) -> datetime:
    """Current time in the configured zone (the only clock the resolvers use)."""
    return datetime.now(ZoneInfo(tz_name or POPPA_TIMEZONE))


def weekday_abbreviation(day: date | datetime) -> str:
    """Map a date to the abbreviation stored in ``TAKES.days``."""
    return WEEKDAY_ABBREVIATIONS[day.weekday()]


def parse_time_of_day(value: str) -> int:
    """Convert ``"HH:MM"`` (24-hour) to minutes since midnight."""
    match = _TIME_RE.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise ValueError(f"Invalid time of day {value!r}; expected HH:MM")
    return int(match.group(1)) * 60 + int(match.group(2))


def is_scheduled_on(days: Iterable[str], abbreviation: str) -> bool:
    days = list(days or [])
    return EVERYDAY in days or abbreviation in days


# ── Due-window resolver ──────────────────────────────────────────────


def resolve_due(
    entries: Iterable[ScheduleEntry],
    now: datetime,
    look_ahead_minutes: int,
) -> list[DueMedication]:
    """Return the doses whose next occurrence falls in ``[now, now + window]``.

    ``now`` is truncated to the minute, and both ends of the window are
    inclusive: at 08:00 with a 15 minute window, 08:00 and 08:15 are due,
    07:59 and 08:16 are not.  When the window runs past midnight the early
    doses of the following day are checked against that day's schedule.
    """
    if look_ahead_minutes < 0:
        raise ValueError("look_ahead_minutes must be >= 0")

    start = now.replace(second=0, microsecond=0)
    end = start + timedelta(minutes=look_ahead_minutes)

    # Each calendar day the window touches, with its offset from start's midnight
    days_in_window: list[tuple[int, str]] = []
    day = start.date()
    offset = 0
    while day <= end.date():
        days_in_window.append((offset, weekday_abbreviation(day)))
        day += timedelta(days=1)
        offset += MINUTES_PER_DAY

    start_minutes = start.hour * 60 + start.minute
    end_minutes = start_minutes + look_ahead_minutes

    due: list[DueMedication] = []
    seen: set[tuple[str, str, str]] = set()
    for entry in entries:
        for index, scheduled in enumerate(entry.schedule):
            try:
                minutes = parse_time_of_day(scheduled)
            except ValueError:
                logger.warning(
                    "Skipping malformed schedule time %r for user %s / %s",
                    scheduled, entry.user_id, entry.medication_name,
                )
                continue

            for day_offset, abbreviation in days_in_window:
                occurrence = minutes + day_offset
                if not start_minutes <= occurrence <= end_minutes:
                    continue
                if not is_scheduled_on(entry.days, abbreviation):
                    continue
                key = (entry.user_id, entry.medication_id or entry.medication_name, scheduled)
                if key in seen:
                    continue
                seen.add(key)
                pills = entry.pills_per_dose[index] if index < len(entry.pills_per_dose) else None
                due.append(
                    DueMedication(
                        user_id=entry.user_id,
                        medication_name=entry.medication_name,
                        phone=entry.phone,
                        scheduled_time=scheduled,
                        medication_id=entry.medication_id,
                        pills=pills,
                    )
                )

    logger.info(
        "Due-window %s→%s (%s): %d dose(s) due",
        start.strftime("%H:%M"), end.strftime("%H:%M"),
        weekday_abbreviation(start), len(due),
    )
    return due


def due_medications(
    store,
    look_ahead_minutes: int,
    now: datetime | None = None,
) -> list[DueMedication]:
    """Read every schedule from *store* and resolve the doses due now."""
    return resolve_due(store.list_schedule_entries(), now or now_local(), look_ahead_minutes)


# ── Twice-daily confirmation window ─────────────────────────────────


def confirmation_period(now: datetime) -> Period | None:
    """Return ``"AM"``/``"PM"`` when *now* is exactly on a checkpoint."""
    for period, checkpoint in CONFIRMATION_CHECKPOINTS.items():
        if now.hour == checkpoint.hour and now.minute == checkpoint.minute:
            return period  # type: ignore[return-value]
    return None


def period_for_hour(hour: int) -> Period:
    return "AM" if hour < 12 else "PM"


def users_due_in_period(
    entries: Iterable[ScheduleEntry],
    day: date | datetime,
    period: Period,
) -> list[dict[str, str]]:
    """Users with at least one dose on *day* inside the AM or PM half-day."""
    abbreviation = weekday_abbreviation(day)
    low, high = (0, 12 * 60) if period == "AM" else (12 * 60, MINUTES_PER_DAY)

    users: dict[str, dict[str, str]] = {}
    for entry in entries:
        if entry.user_id in users or not is_scheduled_on(entry.days, abbreviation):
            continue
        for scheduled in entry.schedule:
            try:
                minutes = parse_time_of_day(scheduled)
            except ValueError:
                continue
            if low <= minutes < high:
                users[entry.user_id] = {
                    "user_id": entry.user_id,
                    "first_name": entry.first_name,
                    "phone": entry.phone,
                }
                break
    return list(users.values())
