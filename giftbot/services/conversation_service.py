import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional

from giftbot.services.state_machine import FIELD_STEPS, AppointmentStep, TimeSlot
from giftbot.services.user_store import UserStore

MAX_HISTORY = 8
MAX_RECENT_RESPONSES = 10


@dataclass
class AppointmentState:
    step: AppointmentStep = AppointmentStep.NAME
    name: Optional[str] = None
    giftee: Optional[str] = None
    date: Optional[str] = None
    time_slot: Optional[TimeSlot] = None
    order_description: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    phone: Optional[str] = None

    def filled(self) -> Dict[str, Optional[str]]:
        return {step.value: getattr(self, step.value) for step in FIELD_STEPS}

    def set_if_empty(self, field_name: str, value: Optional[str]) -> bool:
        if not value or getattr(self, field_name, None):
            return False
        setattr(self, field_name, value)
        return True

    def full_address(self) -> str:
        address = self.address or ""
        if self.city and self.city.lower() not in address.lower():
            return f"{address}, {self.city}" if address else self.city
        return address

    def summary(self) -> dict:
        """Partial state handed to the model and echoed back at confirmation."""
        return {
            "paso_actual": self.step.value,
            "nombre": self.name,
            "felicitado": self.giftee,
            "fecha": self.date,
            "franja_horaria": self.time_slot.value if self.time_slot else None,
            "pedido": self.order_description,
            "direccion": self.full_address() or None,
            "telefono": self.phone,
        }


@dataclass
class ConversationState:
    user_id: str
    history: Deque[dict] = field(default_factory=lambda: deque(maxlen=MAX_HISTORY))
    appointment: Optional[AppointmentState] = None
    assistant_step: Optional[str] = None
    interaction_count: int = 0
    recent_responses: Deque[str] = field(default_factory=lambda: deque(maxlen=MAX_RECENT_RESPONSES))
    profile_name: Optional[str] = None
    known_name: Optional[str] = None
    last_message_timestamp: int = 0

    def add_turn(self, role: str, content: str, timestamp: Optional[int] = None) -> bool:
        """Append a history turn unless it repeats the previous one verbatim."""
        if not content:
            return False
        if self.history:
            last = self.history[-1]
            if last["role"] == role and last["content"] == content:
                return False
        self.history.append(
            {
                "role": role,
                "content": content,
                "timestamp": timestamp if timestamp is not None else int(time.time() * 1000),
            }
        )
        return True

    def recent_history(self, limit: int = MAX_HISTORY) -> List[dict]:
        turns = list(self.history)
        return turns[-limit:] if limit else []


class ConversationStore(UserStore[ConversationState]):
    """Per-user conversation state, lost on restart."""

    def __init__(self):
        super().__init__(lambda user_id: ConversationState(user_id=user_id))
