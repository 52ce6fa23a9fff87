"""Operator alerts for failures that happen after the webhook was acknowledged.

The chat already got a generic error by the time an alert fires, so the alert is the only
place the underlying exception text ends up besides the log.
"""

from typing import Optional

import httpx

from relaybot.config import settings
from relaybot.logging_config import get_logger

logger = get_logger("alert_service")

ALERT_BOT_TOKEN = settings.alert_bot_token
ALERT_CHAT_ID = settings.alert_chat_id
TELEGRAM_SEND_URL = "https://api.telegram.org/bot{token}/sendMessage"

LEVEL_EMOJI = {"WARNING": "⚠️", "ERROR": "❌"}


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    lines = [f"{LEVEL_EMOJI.get(level, '📢')} relaybot {level.lower()}: {message}"]
    for key, value in (context or {}).items():
        if value is not None:
            lines.append(f"{key} = {value}")
    return "\n".join(lines)


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Post an alert to the operator chat. Returns True when Telegram accepted it.

    Without ``ALERT_BOT_TOKEN``/``ALERT_CHAT_ID`` the alert is only logged.
    """
    if not ALERT_BOT_TOKEN or not ALERT_CHAT_ID:
        logger.warning(f"Alert sink not configured, dropping {level}: {message}", extra={"context": context or {}})
        return False

    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(
                TELEGRAM_SEND_URL.format(token=ALERT_BOT_TOKEN),
                json={"chat_id": ALERT_CHAT_ID, "text": format_alert(level, message, context)},
            )
    except httpx.HTTPError as e:
        logger.error(f"Alert delivery failed: {e}", extra={"context": {"level": level}})
        return False

    if response.status_code != 200:
        logger.error(
            f"Alert rejected with status {response.status_code}",
            extra={"context": {"level": level}},
        )
        return False
    return True


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("ERROR", message, context)
