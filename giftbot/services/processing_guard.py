import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from giftbot.logging_config import get_logger

logger = get_logger("processing_guard")

MAX_PROCESSING_SECONDS = 5 * 60
RELATED_WINDOW_SECONDS = 5.0
STALE_RECORD_SECONDS = 10.0


@dataclass
class ProcessingRecord:
    user_id: str
    message_id: str
    started_at: float
    related_to: Optional[str] = None


@dataclass
class GuardDecision:
    already_processing: bool
    related_to: Optional[str] = None

    @property
    def is_duplicate(self) -> bool:
        return self.already_processing and self.related_to is None


class ProcessingGuard:
    """Soft per-user lock over in-flight messages.

    This is a recency window, not a mutex: two handlers that both start more
    than ``RELATED_WINDOW_SECONDS`` apart are treated as independent.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._records: Dict[Tuple[str, str], ProcessingRecord] = {}

    def begin(self, user_id: str, message_id: str) -> GuardDecision:
        now = self._clock()
        self._purge(now)

        key = (user_id, message_id)
        if key in self._records:
            logger.info(
                "Message already in processing",
                extra={"context": {"user_id": user_id, "message_id": message_id}},
            )
            return GuardDecision(already_processing=True)

        recent = [
            record
            for record in self._records.values()
            if record.user_id == user_id and now - record.started_at <= RELATED_WINDOW_SECONDS
        ]
        if recent:
            earliest = min(recent, key=lambda record: record.started_at)
            related_to = earliest.related_to or earliest.message_id
            self._records[key] = ProcessingRecord(user_id, message_id, now, related_to=related_to)
            logger.info(
                "Message related to in-flight message",
                extra={"context": {"user_id": user_id, "message_id": message_id, "related_to": related_to}},
            )
            return GuardDecision(already_processing=True, related_to=related_to)

        self._records[key] = ProcessingRecord(user_id, message_id, now)
        return GuardDecision(already_processing=False)

    def finish(self, user_id: str, message_id: str) -> None:
        now = self._clock()
        for key, record in list(self._records.items()):
            if record.user_id != user_id:
                continue
            if (
                record.message_id == message_id
                or record.related_to == message_id
                or now - record.started_at > STALE_RECORD_SECONDS
            ):
                del self._records[key]

    def is_processing(self, user_id: str, message_id: str) -> bool:
        return (user_id, message_id) in self._records

    def _purge(self, now: float) -> None:
        expired = [key for key, record in self._records.items() if now - record.started_at > MAX_PROCESSING_SECONDS]
        for key in expired:
            del self._records[key]

    def __len__(self) -> int:
        return len(self._records)
