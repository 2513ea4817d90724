import time
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, Field


def now_ms() -> int:
    return int(time.time() * 1000)


class SenderInfo(BaseModel):
    wa_id: Optional[str] = None
    profile_name: Optional[str] = None


class InboundMessage(BaseModel):
    """A single user-sent text message, normalized from the webhook."""

    id: str
    sender: str = Field(validation_alias=AliasChoices("from", "sender"))
    timestamp: int = Field(default_factory=now_ms)
    body: str = ""
    type: str = "text"


class CombinedMessage(InboundMessage):
    """Several buffered fragments joined into one logical message."""

    original_count: int = 1
    original_messages: List[InboundMessage] = Field(default_factory=list)
