"""Centralized configuration for the Poppa concierge backend.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/poppa/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 — lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/poppa/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _optional_env(name: str) -> str | None:
    """Return a config value from env-var or SSM, or ``None`` if unset."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value
    if _ON_AWS:
        return _get_ssm_parameter(name)
    return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = _optional_env(name)
    if value:
        return value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /poppa/{name} (AWS)."
    )


def _env_flag(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes")


# ── Runtime environment ─────────────────────────────────────────────
ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
IS_PRODUCTION: bool = ENVIRONMENT == "production"

# ── Graph store (Neo4j) ─────────────────────────────────────────────
NEO4J_URI: str = _require_env("NEO4J_URI")
NEO4J_USERNAME: str = _require_env("NEO4J_USERNAME")
NEO4J_PASSWORD: str = _require_env("NEO4J_PASSWORD")
NEO4J_DATABASE: str = os.getenv("NEO4J_DATABASE", "neo4j")
NEO4J_MAX_POOL_SIZE: int = int(os.getenv("NEO4J_MAX_POOL_SIZE", "50"))
NEO4J_CONNECTION_TIMEOUT_SECONDS: float = float(
    os.getenv("NEO4J_CONNECTION_TIMEOUT_SECONDS", "30"),
)

# ── Conversation cache (Redis) ──────────────────────────────────────
REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379")
CONVERSATION_TTL_SECONDS: int = int(os.getenv("CONVERSATION_TTL_SECONDS", str(60 * 60 * 24)))
CONVERSATION_HISTORY_LIMIT: int = int(os.getenv("CONVERSATION_HISTORY_LIMIT", "10"))

# ── Messaging provider (Twilio WhatsApp) ────────────────────────────
TWILIO_ACCOUNT_SID: str = _require_env("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN: str = _require_env("TWILIO_AUTH_TOKEN")
TWILIO_MESSAGING_SERVICE_SID: str | None = _optional_env("TWILIO_MESSAGING_SERVICE_SID")
TWILIO_WHATSAPP_FROM: str = os.getenv("TWILIO_WHATSAPP_FROM", "+13057605575")
TWILIO_TIMEOUT_SECONDS: float = float(os.getenv("TWILIO_TIMEOUT_SECONDS", "15"))

# Content template ids are only needed by the sends that use them, so a
# missing id fails at first use (see ``src.templates.content_sid``).
TWILIO_MEDICATION_CONTENT_SID: str | None = _optional_env("TWILIO_MEDICATION_CONTENT_SID")
TWILIO_WELCOME_ELDER_CONTENT_SID: str | None = _optional_env("TWILIO_WELCOME_ELDER_CONTENT_SID")
TWILIO_WELCOME_CARETAKER_CONTENT_SID: str | None = _optional_env(
    "TWILIO_WELCOME_CARETAKER_CONTENT_SID",
)
TWILIO_MED_CONFIRMATION_AM_SID: str | None = _optional_env("TWILIO_MED_CONFIRMATION_AM_SID")
TWILIO_MED_CONFIRMATION_PM_SID: str | None = _optional_env("TWILIO_MED_CONFIRMATION_PM_SID")

# Public callback URL Twilio signs; falls back to the URL of the request.
WEBHOOK_PUBLIC_URL: str | None = os.getenv("WEBHOOK_PUBLIC_URL")

# ── External agent ──────────────────────────────────────────────────
AGENT_URL: str = os.getenv("AGENT_URL", "http://localhost:8000")
AGENT_TIMEOUT_SECONDS: float = float(os.getenv("AGENT_TIMEOUT_SECONDS", "30"))

# ── Scheduling ──────────────────────────────────────────────────────
POPPA_TIMEZONE: str = os.getenv("POPPA_TIMEZONE", "America/New_York")
REMINDER_LOOKAHEAD_MINUTES: int = int(os.getenv("REMINDER_LOOKAHEAD_MINUTES", "15"))
NUMBERED_REMINDER_LIST: bool = _env_flag("NUMBERED_REMINDER_LIST", False)
# ``?test=true&time=HH:MM`` on the confirmation endpoint; never on in production
ALLOW_NOTIFICATION_TEST_MODE: bool = _env_flag(
    "ALLOW_NOTIFICATION_TEST_MODE", not IS_PRODUCTION,
)

# ── Onboarding links ────────────────────────────────────────────────
SIGNUP_URL: str = os.getenv("SIGNUP_URL", "https://poppacare.com")
INVITE_LINK: str = os.getenv(
    "INVITE_LINK",
    "https://wa.me/13057605575?text=Hello,%20Send%20this%20to%20get%20started%20with%20Poppa",
)

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
