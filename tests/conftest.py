import asyncio
import json
import random
from datetime import date
from typing import List, Optional
from unittest.mock import AsyncMock, Mock

import pytest

from giftbot.schemas.message import InboundMessage, now_ms
from giftbot.services.ai_service import ModelRequest, ModelTask
from giftbot.services.conversation_service import ConversationStore
from giftbot.services.field_extractor import parse_date, parse_time_slot
from giftbot.services.message_buffer import MessageBuffer
from giftbot.services.message_service import MessageHandler
from giftbot.services.response_service import ResponsePipeline
from giftbot.services.result import Result
from giftbot.services.sheets_service import OrderStore

TODAY = date(2025, 1, 1)
DEFAULT_CLASSIFICATION = {
    "messageType": "request",
    "topics": ["flores"],
    "purchaseStage": "exploration",
    "suggestedFlow": "none",
    "nextActionSuggestion": False,
    "specificAction": "respond_general",
}


class FakeLanguageModel:
    """Answers each task deterministically and records every request."""

    def __init__(self, classification: Optional[dict] = None, reply: str = "Con gusto te ayudo con tu regalo."):
        self.classification = classification or dict(DEFAULT_CLASSIFICATION)
        self.reply = reply
        self.requests: List[ModelRequest] = []
        self.classify_gate: Optional[asyncio.Event] = None
        self.classify_started = False

    def calls(self, task: ModelTask) -> List[ModelRequest]:
        return [request for request in self.requests if request.task == task]

    async def complete(self, request: ModelRequest) -> str:
        self.requests.append(request)
        if request.task == ModelTask.CLASSIFY_CONTEXT:
            self.classify_started = True
            if self.classify_gate is not None:
                await self.classify_gate.wait()
            return json.dumps(self.classification)
        if request.task == ModelTask.VALIDATE_DATE:
            formatted = parse_date(request.current_message, TODAY)
            if formatted:
                return json.dumps({"valid": True, "formattedDate": formatted})
            return json.dumps({"valid": False, "error": "Fecha no reconocida"})
        if request.task == ModelTask.VALIDATE_TIME_SLOT:
            slot = parse_time_slot(request.current_message)
            if slot:
                return f'```json\n{{"valid": true, "normalizedValue": "{slot.value}"}}\n```'
            return json.dumps({"valid": False, "error": "Franja no reconocida"})
        return self.reply


class FakeOrderStore(OrderStore):
    def __init__(self, rows: Optional[List[List[str]]] = None):
        self.rows = rows or [["nombre", "felicitado", "fecha", "franja_horaria", "pedido", "timestamp"]]
        self.appended: List[List[str]] = []
        self.fetch_count = 0

    def append(self, row):
        self.appended.append(list(row))
        return Result.success(None)

    def fetch_all(self):
        self.fetch_count += 1
        return [list(row) for row in self.rows]


def make_notifier() -> Mock:
    notifier = Mock()
    notifier.send_message = AsyncMock(return_value=Result.success({"messages": [{"id": "wamid.out"}]}))
    notifier.send_media_message = AsyncMock(return_value=Result.success({"messages": [{"id": "wamid.media"}]}))
    notifier.mark_as_read = AsyncMock(return_value=Result.success({"success": True}))
    return notifier


def make_message(message_id: str, body: str, sender: str = "573001112233", timestamp: Optional[int] = None):
    return InboundMessage(
        id=message_id,
        sender=sender,
        timestamp=timestamp if timestamp is not None else now_ms(),
        body=body,
    )


def sent_texts(notifier: Mock) -> List[str]:
    return [call.args[1] for call in notifier.send_message.await_args_list]


@pytest.fixture
def model():
    return FakeLanguageModel()


@pytest.fixture
def order_store():
    return FakeOrderStore()


@pytest.fixture
def notifier():
    return make_notifier()


@pytest.fixture
def make_handler(model, order_store, notifier):
    def _make(**overrides) -> MessageHandler:
        conversations = overrides.pop("conversations", ConversationStore())
        options = {
            "notifier": notifier,
            "model": model,
            "order_store": order_store,
            "conversations": conversations,
            "buffer": MessageBuffer(wait_seconds=0.05),
            "pipeline": ResponsePipeline(conversations, humanize=False),
            "rng": random.Random(7),
            "related_defer_seconds": 30.0,
            "catalog_url": "https://example.com/catalogo.pdf",
            "catalog_caption": "Catálogo Dommo",
        }
        options.update(overrides)
        return MessageHandler(**options)

    return _make


@pytest.fixture(name="make_message")
def make_message_fixture():
    return make_message


@pytest.fixture(name="sent_texts")
def sent_texts_fixture():
    return sent_texts


@pytest.fixture
def make_order_store():
    return FakeOrderStore


@pytest.fixture
def make_model():
    return FakeLanguageModel
