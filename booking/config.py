from __future__ import annotations

import logging
import os
from datetime import timedelta, timezone
from typing import Any, Dict

from booking.app.core import constants

logger = logging.getLogger(__name__)

# The practice works in a fixed civil offset (no DST); never rely on the host timezone.
LOCAL_TZ = timezone(timedelta(hours=constants.PRACTICE_UTC_OFFSET_HOURS), name="UTC+03:00")

# Runtime settings resolved from the environment (.env is loaded by constants)
SETTINGS: Dict[str, Any] = {
    "database_url": os.getenv("DATABASE_URL", constants.DEFAULT_DATABASE_URL),
    "telegram_bot_token": constants.TELEGRAM_BOT_TOKEN,
    "telegram_admin_chat_ids": list(constants.TELEGRAM_ADMIN_CHAT_IDS),
    "resend_api_key": constants.RESEND_API_KEY,
    "email_from": constants.EMAIL_FROM,
    "admin_email": constants.ADMIN_EMAIL,
    "reminders_enabled": constants.REMINDERS_ENABLED,
    "reminders_check_seconds": constants.REMINDERS_CHECK_SECONDS,
    "booking_horizon_days": constants.BOOKING_HORIZON_DAYS,
    "min_lead_minutes": constants.MIN_LEAD_MINUTES,
}


def get_setting(key: str, default: Any = None) -> Any:
    """Безопасно получает настройку по ключу.

    Args:
        key: Ключ настройки.
        default: Значение по умолчанию, если ключ не найден.

    Returns:
        Значение настройки или default.
    """
    value = SETTINGS.get(key, default)
    logger.debug("Получена настройка: key=%s", key)
    return value


__all__ = ["LOCAL_TZ", "SETTINGS", "get_setting"]
