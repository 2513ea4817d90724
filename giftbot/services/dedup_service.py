"""Suppression of repeated webhook deliveries and re-seen message ids."""

import json
import random
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from giftbot.logging_config import get_logger

logger = get_logger("dedup_service")

MAX_FINGERPRINTS = 1000
EVICT_BATCH = 500
FINGERPRINT_PREFIX_CHARS = 100
MESSAGE_ID_TTL_SECONDS = 3600


def collect_message_ids(payload: Any) -> List[str]:
    """Find message ids under any ``messages`` list, however deeply nested."""
    ids: List[str] = []
    stack = [payload]
    while stack:
        node = stack.pop()
        if isinstance(node, dict):
            messages = node.get("messages")
            if isinstance(messages, list):
                for item in messages:
                    if isinstance(item, dict) and item.get("id"):
                        ids.append(str(item["id"]))
            stack.extend(value for key, value in node.items() if key != "messages")
        elif isinstance(node, list):
            stack.extend(node)
    return ids


def build_fingerprint(payload: Any) -> str:
    message_ids = collect_message_ids(payload)
    if message_ids:
        return "|".join(sorted(set(message_ids)))
    try:
        return json.dumps(payload, sort_keys=True, ensure_ascii=False)[:FINGERPRINT_PREFIX_CHARS]
    except (TypeError, ValueError):
        # Never matches a previous delivery.
        return f"{datetime.now(timezone.utc).isoformat()}-{random.random()}"


class DeliveryDeduplicator:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        # dicts keep insertion order, which doubles as eviction order
        self._fingerprints: Dict[str, None] = {}
        self._message_ids: Dict[str, float] = {}

    def is_duplicate(self, payload: Any) -> bool:
        fingerprint = build_fingerprint(payload)
        if fingerprint in self._fingerprints:
            logger.info("Duplicate webhook delivery", extra={"context": {"fingerprint": fingerprint[:80]}})
            return True

        self._fingerprints[fingerprint] = None
        if len(self._fingerprints) > MAX_FINGERPRINTS:
            for stale in list(self._fingerprints)[:EVICT_BATCH]:
                del self._fingerprints[stale]
        return False

    def mark_message(self, message_id: str) -> bool:
        """Record a message id; False when it was already handled within the TTL."""
        now = self._clock()
        expired = [mid for mid, seen_at in self._message_ids.items() if now - seen_at > MESSAGE_ID_TTL_SECONDS]
        for mid in expired:
            del self._message_ids[mid]

        if message_id in self._message_ids:
            return False
        self._message_ids[message_id] = now
        return True

    def __len__(self) -> int:
        return len(self._fingerprints)
