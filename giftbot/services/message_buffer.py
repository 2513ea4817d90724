"""Per-user accumulation of rapid message fragments.

Customers often split one thought across several chat messages. Fragments
are held per user and released as a single CombinedMessage either as soon as
the newest fragment looks like a finished thought, or when the debounce
timer for that user expires.
"""

import asyncio
import re
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from giftbot.logging_config import get_logger
from giftbot.schemas.message import CombinedMessage, InboundMessage
from giftbot.services.intent_service import is_simple_greeting, is_yes_no_answer
from giftbot.services.state_machine import AppointmentStep
from giftbot.services.user_store import UserStore

logger = get_logger("message_buffer")

DEFAULT_WAIT_SECONDS = 10.0
INACTIVE_ENTRY_SECONDS = 30 * 60
COMPLETE_LENGTH_THRESHOLD = 50

QUESTION_PATTERN = re.compile(
    r"\b(cómo|como|qué|que|cuál|cual|cuánto|cuanto|dónde|donde|cuándo|cuando)\b.+\?",
    re.IGNORECASE,
)
REQUEST_PATTERN = re.compile(
    r"\b(quiero|necesito|dame|envía|envia|manda|busco|por favor)\s+.{10,}",
    re.IGNORECASE,
)

FlushCallback = Callable[[CombinedMessage], Awaitable[None]]


@dataclass
class BufferEntry:
    queued_texts: List[str] = field(default_factory=list)
    queued_messages: List[InboundMessage] = field(default_factory=list)
    first_message_id: Optional[str] = None
    last_activity: float = 0.0
    flow_step_hint: Optional[str] = None


def looks_complete(text: str, flow_step_hint: Optional[str] = None) -> bool:
    """Whether a freshly received fragment reads as a finished thought."""
    stripped = (text or "").strip()
    if not stripped:
        return False
    if QUESTION_PATTERN.search(stripped):
        return True
    if REQUEST_PATTERN.search(stripped):
        return True
    if len(stripped) > COMPLETE_LENGTH_THRESHOLD:
        return True
    if stripped[-1] in ".!?":
        return True

    if flow_step_hint == AppointmentStep.NAME:
        return " " in stripped and len(stripped) > 10
    if flow_step_hint == AppointmentStep.ADDRESS:
        return any(char.isdigit() for char in stripped) and len(stripped) > 15
    if flow_step_hint == AppointmentStep.CONFIRMATION:
        return is_yes_no_answer(stripped)
    return False


class MessageBuffer:
    def __init__(
        self,
        wait_seconds: float = DEFAULT_WAIT_SECONDS,
        patient_wait_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.wait_seconds = wait_seconds
        self.patient_wait_seconds = patient_wait_seconds or wait_seconds
        self._clock = clock
        self._entries: UserStore[BufferEntry] = UserStore(lambda _user_id: BufferEntry())
        self._timers: Dict[str, asyncio.Task] = {}

    async def add_message(
        self,
        user_id: str,
        message: InboundMessage,
        on_flush: FlushCallback,
        wait_time: Optional[float] = None,
    ) -> bool:
        """Queue a fragment.

        Returns True when the caller should handle ``message`` itself right away
        (greetings, empty text). Otherwise the fragment is buffered and delivered
        later through ``on_flush``; a fragment that completes the thought flushes
        the buffer before this call returns.
        """
        text = (message.body or "").strip()
        if not text:
            logger.warning("Message without text, skipping buffer", extra={"context": {"user_id": user_id}})
            return True

        if is_simple_greeting(text):
            logger.info("Greeting bypasses buffer", extra={"context": {"user_id": user_id}})
            return True

        entry = self._enqueue(user_id, message, text)
        self._cancel_timer(user_id)

        if looks_complete(text, entry.flow_step_hint):
            logger.info(
                "Complete message detected, flushing buffer",
                extra={"context": {"user_id": user_id, "queued": len(entry.queued_texts)}},
            )
            combined = self.get_combined_message(user_id)
            if combined is not None:
                await on_flush(combined)
            return False

        delay = wait_time if wait_time is not None else self._wait_for(entry)
        self._schedule_flush(user_id, on_flush, delay)
        return False

    async def defer_message(
        self,
        user_id: str,
        message: InboundMessage,
        on_flush: FlushCallback,
        wait_time: Optional[float] = None,
    ) -> None:
        """Queue a message with no completeness check and (re)arm the timer."""
        entry = self._enqueue(user_id, message, (message.body or "").strip())
        self._cancel_timer(user_id)
        delay = wait_time if wait_time is not None else self._wait_for(entry)
        self._schedule_flush(user_id, on_flush, delay)

    def get_combined_message(self, user_id: str) -> Optional[CombinedMessage]:
        entry = self._entries.get(user_id)
        if entry is None or not entry.queued_messages:
            return None

        messages = list(entry.queued_messages)
        combined = CombinedMessage(
            id=entry.first_message_id or messages[0].id,
            sender=user_id,
            timestamp=messages[-1].timestamp,
            body=" ".join(text for text in entry.queued_texts if text),
            type="text",
            original_count=len(messages),
            original_messages=messages,
        )

        entry.queued_texts = []
        entry.queued_messages = []
        entry.first_message_id = None
        return combined

    def update_state(self, user_id: str, flow_step_hint: Optional[str]) -> None:
        if not user_id or not isinstance(user_id, str):
            logger.warning("Ignoring flow state update for invalid user id")
            return
        self._entries.get_or_create(user_id).flow_step_hint = flow_step_hint

    def cleanup(self) -> int:
        """Drop entries idle for more than 30 minutes; returns how many were removed."""
        now = self._clock()
        removed = 0
        for user_id, entry in self._entries.items():
            if now - entry.last_activity > INACTIVE_ENTRY_SECONDS:
                self._cancel_timer(user_id)
                self._entries.pop(user_id)
                removed += 1
        if removed:
            logger.info("Buffer cleanup", extra={"context": {"removed": removed, "remaining": len(self._entries)}})
        return removed

    def has_pending(self, user_id: str) -> bool:
        entry = self._entries.get(user_id)
        return bool(entry and entry.queued_messages)

    def _enqueue(self, user_id: str, message: InboundMessage, text: str) -> BufferEntry:
        entry = self._entries.get_or_create(user_id)
        if not entry.queued_messages:
            entry.first_message_id = message.id
        entry.queued_texts.append(text)
        entry.queued_messages.append(message)
        entry.last_activity = self._clock()
        return entry

    def _wait_for(self, entry: BufferEntry) -> float:
        if entry.flow_step_hint in (AppointmentStep.ORDER_DESCRIPTION, AppointmentStep.ADDRESS):
            return self.patient_wait_seconds
        return self.wait_seconds

    def _schedule_flush(self, user_id: str, on_flush: FlushCallback, delay: float) -> None:
        self._timers[user_id] = asyncio.create_task(self._flush_after(user_id, on_flush, delay))

    def _cancel_timer(self, user_id: str) -> None:
        task = self._timers.pop(user_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def _flush_after(self, user_id: str, on_flush: FlushCallback, delay: float) -> None:
        await asyncio.sleep(delay)
        # Unregister first so on_flush may buffer again for this user.
        if self._timers.get(user_id) is asyncio.current_task():
            del self._timers[user_id]

        combined = self.get_combined_message(user_id)
        if combined is None:
            return
        logger.info(
            "Buffer timer flushed",
            extra={"context": {"user_id": user_id, "original_count": combined.original_count}},
        )
        try:
            await on_flush(combined)
        except Exception:
            logger.error("Buffered message handler failed", extra={"context": {"user_id": user_id}}, exc_info=True)
