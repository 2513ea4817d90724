import json
from typing import List, Optional, Tuple

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError

from giftbot.config import settings
from giftbot.logging_config import get_logger
from giftbot.schemas.message import InboundMessage, SenderInfo, now_ms
from giftbot.schemas.webhook import WebhookResponse, WhatsAppMessage, WhatsAppValue, WhatsAppWebhook
from giftbot.services.message_service import MessageHandler, get_message_handler

logger = get_logger("webhook")

router = APIRouter()


async def parse_webhook_body(request: Request) -> Optional[dict]:
    """Parse the delivery body with tolerant decoding; None when it is not JSON."""
    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            return json.loads(raw.decode(enc))
        except (UnicodeDecodeError, ValueError):
            continue
    logger.warning("Failed to decode webhook payload")
    return None


def _timestamp_ms(value) -> int:
    try:
        return int(value) * 1000
    except (TypeError, ValueError):
        return now_ms()


def _to_inbound(message: WhatsAppMessage) -> Optional[InboundMessage]:
    if not message.id or not message.sender:
        logger.warning("Skipping message without id or sender")
        return None
    if message.type != "text":
        logger.info(
            "Skipping non-text message",
            extra={"context": {"message_id": message.id, "type": message.type}},
        )
        return None
    return InboundMessage(
        id=message.id,
        sender=message.sender,
        timestamp=_timestamp_ms(message.timestamp),
        body=(message.text.body if message.text else "") or "",
        type="text",
    )


def _sender_info(value: WhatsAppValue) -> SenderInfo:
    if not value.contacts:
        return SenderInfo()
    contact = value.contacts[0]
    return SenderInfo(
        wa_id=contact.wa_id,
        profile_name=contact.profile.name if contact.profile else None,
    )


def extract_inbound_messages(payload: WhatsAppWebhook) -> List[Tuple[InboundMessage, SenderInfo]]:
    """Text messages from both ``entry[].changes[].value`` and ``entry[].value`` shapes."""
    found: List[Tuple[InboundMessage, SenderInfo]] = []
    for entry in payload.entry:
        for value in entry.values():
            sender = _sender_info(value)
            for raw_message in value.messages:
                message = _to_inbound(raw_message)
                if message is not None:
                    found.append((message, sender))
    return found


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=WebhookResponse(success=False, message=message).model_dump(),
    )


@router.get("/webhook")
async def verify_webhook(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
):
    """Subscription handshake from the WhatsApp Cloud API."""
    if mode == "subscribe" and settings.webhook_verify_token and token == settings.webhook_verify_token:
        logger.info("Webhook verified")
        return PlainTextResponse(content=challenge or "", status_code=200)
    logger.warning("Webhook verification failed", extra={"context": {"mode": mode}})
    return PlainTextResponse(content="Forbidden", status_code=403)


@router.post("/webhook", response_model=WebhookResponse)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    handler: MessageHandler = Depends(get_message_handler),
):
    try:
        body = await parse_webhook_body(request)
        if not isinstance(body, dict) or not body.get("object"):
            return _error(400, "Invalid webhook payload")

        try:
            payload = WhatsAppWebhook.model_validate(body)
        except ValidationError as e:
            logger.warning(f"Webhook payload failed validation: {e}")
            return _error(400, "Invalid webhook payload")

        if handler.deduplicator.is_duplicate(body):
            return WebhookResponse(success=True, message="Duplicate delivery ignored")

        messages = extract_inbound_messages(payload)
        for message, sender in messages:
            background_tasks.add_task(handler.handle_incoming_message, message, sender)

        logger.info("Webhook accepted", extra={"context": {"messages": len(messages)}})
        return WebhookResponse(success=True, message=f"Accepted {len(messages)} message(s)")

    except Exception as e:
        logger.error(f"Webhook error: {e}", exc_info=True)
        return _error(500, "Internal error")
