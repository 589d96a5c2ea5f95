"""Shared test fixtures for the Poppa test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("NEO4J_URI", "bolt://localhost:7687")
    os.environ.setdefault("NEO4J_USERNAME", "neo4j")
    os.environ.setdefault("NEO4J_PASSWORD", "test-password")
    os.environ.setdefault("TWILIO_ACCOUNT_SID", "ACtest0000000000000000000000000000")
    os.environ.setdefault("TWILIO_AUTH_TOKEN", "test-auth-token")
    os.environ.setdefault("TWILIO_MEDICATION_CONTENT_SID", "HXmedication")
    os.environ.setdefault("TWILIO_WELCOME_ELDER_CONTENT_SID", "HXwelcomeelder")
    os.environ.setdefault("TWILIO_WELCOME_CARETAKER_CONTENT_SID", "HXwelcomecaretaker")
    os.environ.setdefault("TWILIO_MED_CONFIRMATION_AM_SID", "HXconfirmam")
    os.environ.setdefault("TWILIO_MED_CONFIRMATION_PM_SID", "HXconfirmpm")
    os.environ.setdefault("POPPA_TIMEZONE", "America/New_York")
    os.environ.setdefault("ENVIRONMENT", "test")
    os.environ.setdefault("METRICS_ENABLED", "false")


# ── Fake Neo4j driver ────────────────────────────────────────────────


class FakeRecord:
    def __init__(self, data: dict):
        self._data = data

    def data(self) -> dict:
        return dict(self._data)


class FakeTx:
    """Replays one queued result per ``run`` call and records every query."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls: list[tuple[str, dict]] = []

    def run(self, cypher, params=None):
        self.calls.append((cypher, dict(params or {})))
        rows = self.responses.pop(0) if self.responses else []
        return [FakeRecord(row) for row in rows]


class FakeSession:
    def __init__(self, tx: FakeTx):
        self._tx = tx

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute_read(self, work, *args, **kwargs):
        return work(self._tx, *args, **kwargs)

    execute_write = execute_read

    def run(self, cypher, params=None):
        self._tx.calls.append((cypher, dict(params or {})))
        return MagicMock()


class FakeDriver:
    def __init__(self, *responses):
        self.tx = FakeTx(responses)
        self.closed = False
        self.session_kwargs: dict = {}

    @property
    def calls(self) -> list[tuple[str, dict]]:
        return self.tx.calls

    def session(self, **kwargs):
        self.session_kwargs = kwargs
        return FakeSession(self.tx)

    def verify_connectivity(self):
        return None

    def close(self):
        self.closed = True


@pytest.fixture
def fake_driver():
    """Factory: ``fake_driver([rows for 1st run], [rows for 2nd run], ...)``."""
    return FakeDriver


# ── Service doubles ──────────────────────────────────────────────────


@pytest.fixture
def mock_messenger():
    messenger = MagicMock()
    messenger.send_template.return_value = "SMtemplate"
    messenger.send_text.return_value = "SMtext"
    messenger.validate_request.return_value = True
    return messenger


@pytest.fixture
def mock_memory():
    memory = MagicMock()
    memory.load.return_value = []
    return memory


@pytest.fixture
def make_entry():
    """Factory fixture for ``ScheduleEntry`` rows."""
    from src.services.schedule import ScheduleEntry

    def _make(
        user_id: str = "user-1",
        medication_name: str = "Vitamin D",
        schedule: list[str] | None = None,
        days: list[str] | None = None,
        phone: str = "+13055550100",
        medication_id: str | None = None,
        pills_per_dose: list[int] | None = None,
        first_name: str = "Rosa",
    ) -> ScheduleEntry:
        schedule = schedule or ["08:00"]
        return ScheduleEntry(
            user_id=user_id,
            phone=phone,
            medication_id=medication_id or f"med-{medication_name.lower().replace(' ', '-')}",
            medication_name=medication_name,
            schedule=schedule,
            pills_per_dose=pills_per_dose or [1] * len(schedule),
            days=days or ["Everyday"],
            first_name=first_name,
        )

    return _make
