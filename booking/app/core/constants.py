from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_str_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [tok.strip() for tok in raw.replace(";", ",").split(",") if tok.strip()]


def _env_int_list(name: str) -> list[int]:
    vals: list[int] = []
    for tok in _env_str_list(name):
        try:
            vals.append(int(tok))
        except ValueError:
            continue
    return vals


# Scheduling rules (fixed for the practice, not ENV overridable)
BOOKING_HORIZON_DAYS: int = 30
MIN_LEAD_MINUTES: int = 60
PRACTICE_UTC_OFFSET_HOURS: int = 3
SESSION_DURATION_MIN: int = 15
SESSION_DURATION_MAX: int = 180

# Fallback working hours until an admin saves the settings row
DEFAULT_WORK_START: str = "09:00"
DEFAULT_WORK_END: str = "18:00"
DEFAULT_SESSION_DURATION: int = 60

DEFAULT_DAY_BLOCK_REASON: str = "Весь день заблокирован"

# Database
DEFAULT_DATABASE_URL: str = "postgresql+asyncpg://booking_user:change_me@db:5432/booking"

# Logging
LOG_LEVEL_NAME: str = os.getenv("LOG_LEVEL", "INFO").strip().upper()
LOG_FILE: str = os.getenv("LOG_FILE", "booking.log")

# Notifications
TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_ADMIN_CHAT_IDS: list[int] = _env_int_list("TELEGRAM_ADMIN_CHAT_ID")
RESEND_API_KEY: str = os.getenv("RESEND_API_KEY", "")
EMAIL_FROM: str = os.getenv("EMAIL_FROM", "Booking <onboarding@resend.dev>")
ADMIN_EMAIL: str = os.getenv("ADMIN_EMAIL", "")

# Auth tokens issued by the session provider
JWT_SECRET: str = os.getenv("JWT_SECRET", "change-me")
JWT_ALGO: str = "HS256"
JWT_TTL_SECONDS: int = _env_int("JWT_TTL_SECONDS", 3600)

CORS_ORIGINS: list[str] = _env_str_list("CORS_ORIGINS")

# Reminders worker
REMINDERS_ENABLED: bool = _env_bool("REMINDERS_ENABLED", True)
REMINDERS_CHECK_SECONDS_RAW: str = os.getenv("REMINDERS_CHECK_SECONDS", "60")
try:
    REMINDERS_CHECK_SECONDS: int = int(REMINDERS_CHECK_SECONDS_RAW)
    REMINDERS_CHECK_SECONDS_INVALID: bool = False
except ValueError:
    REMINDERS_CHECK_SECONDS = 60
    REMINDERS_CHECK_SECONDS_INVALID = True

__all__ = [
    "BOOKING_HORIZON_DAYS",
    "MIN_LEAD_MINUTES",
    "PRACTICE_UTC_OFFSET_HOURS",
    "SESSION_DURATION_MIN",
    "SESSION_DURATION_MAX",
    "DEFAULT_WORK_START",
    "DEFAULT_WORK_END",
    "DEFAULT_SESSION_DURATION",
    "DEFAULT_DAY_BLOCK_REASON",
    "DEFAULT_DATABASE_URL",
    "LOG_LEVEL_NAME",
    "LOG_FILE",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_ADMIN_CHAT_IDS",
    "RESEND_API_KEY",
    "EMAIL_FROM",
    "ADMIN_EMAIL",
    "JWT_SECRET",
    "JWT_ALGO",
    "JWT_TTL_SECONDS",
    "CORS_ORIGINS",
    "REMINDERS_ENABLED",
    "REMINDERS_CHECK_SECONDS_RAW",
    "REMINDERS_CHECK_SECONDS",
    "REMINDERS_CHECK_SECONDS_INVALID",
]
