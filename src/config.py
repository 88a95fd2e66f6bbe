"""Centralized configuration for the Repair ASAP lead bot.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/repair-asap/<VARIABLE_NAME>``.

Missing secrets never raise at import time.  Each route checks the
settings it needs with :func:`missing_settings` and answers ``503`` when
something is absent, so one unconfigured connector cannot take the whole
process down.
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
        resp = ssm.get_parameter(Name=f"/repair-asap/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _optional_secret(name: str) -> str | None:
    """Return a secret from env-var or SSM, or ``None`` when unset."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        return _get_ssm_parameter(name)
    return None


def missing_settings(*names: str) -> list[str]:
    """Return the subset of *names* whose module-level value is empty.

    Looked up at call time so tests (and a late SSM refresh) can patch
    the module attributes.
    """
    current = globals()
    return [name for name in names if not current.get(name)]


# ── Assistant service (OpenAI Assistants v2) ─────────────────────────
OPENAI_API_KEY: str | None = _optional_secret("OPENAI_API_KEY")
OPENAI_ASSISTANT_ID: str | None = _optional_secret("OPENAI_ASSISTANT_ID")
OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")

ASSISTANT_SETTINGS = ("OPENAI_API_KEY", "OPENAI_ASSISTANT_ID")

# ── Run polling ──────────────────────────────────────────────────────
# The hosting platform kills requests at 60 s; stay well under it.
RUN_POLL_INTERVAL_SECONDS: float = float(os.getenv("RUN_POLL_INTERVAL_SECONDS", "1.0"))
RUN_TIMEOUT_SECONDS: float = float(os.getenv("RUN_TIMEOUT_SECONDS", "50"))

# ── CRM (GoHighLevel / ProsBuddy) ────────────────────────────────────
PROSBUDDY_API_TOKEN: str | None = _optional_secret("PROSBUDDY_API_TOKEN")
PROSBUDDY_LOCATION_ID: str | None = _optional_secret("PROSBUDDY_LOCATION_ID")
PROSBUDDY_API_URL: str = os.getenv(
    "PROSBUDDY_API_URL", "https://services.leadconnectorhq.com",
)

CRM_SETTINGS = ("PROSBUDDY_API_TOKEN", "PROSBUDDY_LOCATION_ID")

# ── Calendar (GoHighLevel calendars) ─────────────────────────────────
GHL_CALENDAR_ID: str | None = os.getenv("GHL_CALENDAR_ID")
CALENDAR_TIMEZONE: str = os.getenv("CALENDAR_TIMEZONE", "America/New_York")
APPOINTMENT_DURATION_MINUTES: int = int(os.getenv("APPOINTMENT_DURATION_MINUTES", "90"))

CALENDAR_SETTINGS = ("PROSBUDDY_API_TOKEN", "PROSBUDDY_LOCATION_ID", "GHL_CALENDAR_ID")

# ── Google Sheets ────────────────────────────────────────────────────
GOOGLE_SHEET_ID: str | None = _optional_secret("GOOGLE_SHEET_ID")
GOOGLE_SERVICE_ACCOUNT_CREDENTIALS: str | None = _optional_secret(
    "GOOGLE_SERVICE_ACCOUNT_CREDENTIALS",
)
GOOGLE_SHEET_RANGE: str = os.getenv("GOOGLE_SHEET_RANGE", "Sheet1!A:K")

SHEET_SETTINGS = ("GOOGLE_SHEET_ID", "GOOGLE_SERVICE_ACCOUNT_CREDENTIALS")

# ── Notifications (Telegram bot) ─────────────────────────────────────
TELEGRAM_BOT_TOKEN: str | None = _optional_secret("TELEGRAM_BOT_TOKEN")
TELEGRAM_CHAT_ID: str | None = os.getenv("TELEGRAM_CHAT_ID")

# ── Lead handling ────────────────────────────────────────────────────
# any | primary | all  (see src/services/leads.py)
LEAD_SAVE_POLICY: str = os.getenv("LEAD_SAVE_POLICY", "any")
PHOTO_CACHE_TTL_SECONDS: float = float(os.getenv("PHOTO_CACHE_TTL_SECONDS", "1800"))
SHEET_JOB_TOKEN: str | None = _optional_secret("SHEET_JOB_TOKEN")

# ── Inbound CRM messages (SMS, Yelp, Thumbtack auto-replies) ─────────
# The bot stays silent this long after a team member last wrote
INBOUND_OWNER_COOLDOWN_MINUTES: float = float(os.getenv("INBOUND_OWNER_COOLDOWN_MINUTES", "120"))
# Human-like pause before a reply; the CRM workflow times out at ~30 s
INBOUND_REPLY_DELAY_ENABLED: bool = os.getenv("INBOUND_REPLY_DELAY_ENABLED", "true").lower() == "true"
INBOUND_WEBHOOK_TOKEN: str | None = _optional_secret("INBOUND_WEBHOOK_TOKEN")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "https://asap.repair,https://www.asap.repair,http://localhost:3000",
).split(",")
