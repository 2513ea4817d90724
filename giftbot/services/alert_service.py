"""Operator alerts sent to a Telegram chat."""

import time
from typing import Dict, Optional

import httpx

from giftbot.config import settings
from giftbot.logging_config import get_logger

logger = get_logger("alert_service")

ALERT_COOLDOWN_SECONDS = 300
_last_sent: Dict[str, float] = {}


async def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send alert to Telegram.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict

    Returns:
        True if sent successfully
    """
    if not settings.alert_bot_token or not settings.alert_chat_id:
        logger.warning(f"Alert not configured: {level} - {message}")
        return False

    key = f"{level}:{message}"
    now = time.monotonic()
    if now - _last_sent.get(key, float("-inf")) < ALERT_COOLDOWN_SECONDS:
        return False
    _last_sent[key] = now

    emoji = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}
    text = f"{emoji.get(level, '📢')} *{level}*\n\n{message}"
    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.post(
                f"https://api.telegram.org/bot{settings.alert_bot_token}/sendMessage",
                json={"chat_id": settings.alert_chat_id, "text": text, "parse_mode": "Markdown"},
            )
            return response.status_code == 200
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}")
        return False


async def alert_error(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for ERROR level alert."""
    return await send_alert("ERROR", message, context)


async def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for CRITICAL level alert."""
    return await send_alert("CRITICAL", message, context)
