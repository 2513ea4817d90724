import re
from typing import Optional

import httpx

from giftbot.config import settings
from giftbot.logging_config import get_logger
from giftbot.services.alert_service import alert_critical
from giftbot.services.result import Result

logger = get_logger("whatsapp_service")

GRAPH_API_BASE = "https://graph.facebook.com"
RETRY_TRUNCATE_THRESHOLD = 250
TRUNCATED_LENGTH = 200
TRUNCATION_SUFFIX = "... (Mensaje truncado)"

# Control characters except tab/newline, zero-width characters and BOM.
UNSAFE_CHARS_PATTERN = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f\u200b-\u200d\u2060\ufeff]")


def sanitize_text(text: str) -> str:
    return UNSAFE_CHARS_PATTERN.sub("", text or "").strip()


class WhatsAppNotifier:
    """Outbound calls to the WhatsApp Cloud API."""

    def __init__(
        self,
        token: str,
        phone_number_id: str,
        api_version: str = "v22.0",
        timeout_seconds: float = 30.0,
    ):
        self.token = token
        self.phone_number_id = phone_number_id
        self.api_version = api_version
        self.timeout_seconds = timeout_seconds

    @property
    def messages_url(self) -> str:
        return f"{GRAPH_API_BASE}/{self.api_version}/{self.phone_number_id}/messages"

    async def _post(self, payload: dict) -> Result[dict]:
        if not self.token or not self.phone_number_id:
            logger.error("WhatsApp credentials are missing (WHATSAPP_TOKEN / PHONE_NUMBER_ID)")
            return Result.failure("WhatsApp credentials missing", code="not_configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    self.messages_url,
                    headers={
                        "Authorization": f"Bearer {self.token}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as exc:
            logger.error(f"WhatsApp transport error: {exc}")
            return Result.failure(str(exc), code="transport_error")

        if response.status_code != 200:
            body = response.text[:500]
            code = "permission_denied" if "permission" in body.lower() else f"http_{response.status_code}"
            logger.warning(
                "WhatsApp API rejected request",
                extra={"context": {"status": response.status_code, "body": body}},
            )
            return Result.failure(body, code=code)

        return Result.success(response.json())

    async def send_message(self, to: str, text: str, in_reply_to: Optional[str] = None) -> Result[dict]:
        body = sanitize_text(text)
        if not body:
            return Result.failure("Empty message", code="empty_message")

        result = await self._post(self._text_payload(to, body, in_reply_to))
        if result.ok:
            logger.info("Message sent", extra={"context": {"to": to, "length": len(body)}})
            return result

        if len(body) > RETRY_TRUNCATE_THRESHOLD:
            logger.warning("Retrying send with truncated text", extra={"context": {"to": to, "length": len(body)}})
            truncated = body[:TRUNCATED_LENGTH] + TRUNCATION_SUFFIX
            result = await self._post(self._text_payload(to, truncated, in_reply_to))
            if result.ok:
                return result

        await alert_critical("WhatsApp send failed", {"to": to, "error": result.error})
        return result

    async def send_media_message(
        self,
        to: str,
        media_type: str,
        url: str,
        caption: Optional[str] = None,
        in_reply_to: Optional[str] = None,
    ) -> Result[dict]:
        media = {"link": url}
        if caption:
            media["caption"] = sanitize_text(caption)
        if media_type == "document":
            media["filename"] = f"{caption or 'documento'}.pdf"

        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": media_type,
            media_type: media,
        }
        if in_reply_to:
            payload["context"] = {"message_id": in_reply_to}

        result = await self._post(payload)
        if result.ok:
            return result

        logger.warning("Media send failed, sending link instead", extra={"context": {"to": to, "error": result.error}})
        link_text = f"¡Claro! Te comparto el enlace: {url}"
        fallback = await self.send_message(to, link_text, in_reply_to)
        if fallback.ok:
            return Result.success({**(fallback.value or {}), "fallback_link": True, "text": link_text})
        return fallback

    async def mark_as_read(self, message_id: str) -> Result[dict]:
        if not message_id:
            return Result.failure("No message ID provided", code="missing_message_id")
        result = await self._post(
            {
                "messaging_product": "whatsapp",
                "status": "read",
                "message_id": message_id,
            }
        )
        if not result.ok and result.error_code == "permission_denied":
            logger.info("Mark-as-read not permitted for this app, continuing")
        return result

    @staticmethod
    def _text_payload(to: str, body: str, in_reply_to: Optional[str]) -> dict:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"preview_url": True, "body": body},
        }
        if in_reply_to:
            payload["context"] = {"message_id": in_reply_to}
        return payload


_notifier: Optional[WhatsAppNotifier] = None


def get_notifier() -> WhatsAppNotifier:
    global _notifier
    if _notifier is None:
        _notifier = WhatsAppNotifier(
            token=settings.whatsapp_token,
            phone_number_id=settings.phone_number_id,
            api_version=settings.graph_api_version,
        )
    return _notifier
