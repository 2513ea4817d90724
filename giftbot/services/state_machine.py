from enum import Enum
from typing import Optional


class AppointmentStep(str, Enum):
    NAME = "name"
    GIFTEE = "giftee"
    DATE = "date"
    TIME_SLOT = "time_slot"
    ORDER_DESCRIPTION = "order_description"
    ADDRESS = "address"
    CONFIRMATION = "confirmation"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TimeSlot(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"


# Field collection order; each data step stores into the field of the same name.
FIELD_STEPS = [
    AppointmentStep.NAME,
    AppointmentStep.GIFTEE,
    AppointmentStep.DATE,
    AppointmentStep.TIME_SLOT,
    AppointmentStep.ORDER_DESCRIPTION,
    AppointmentStep.ADDRESS,
]

VALID_TRANSITIONS = {
    AppointmentStep.NAME: FIELD_STEPS[1:] + [AppointmentStep.CONFIRMATION, AppointmentStep.CANCELLED],
    AppointmentStep.GIFTEE: FIELD_STEPS[2:] + [AppointmentStep.CONFIRMATION, AppointmentStep.CANCELLED],
    AppointmentStep.DATE: FIELD_STEPS[3:] + [AppointmentStep.CONFIRMATION, AppointmentStep.CANCELLED],
    AppointmentStep.TIME_SLOT: FIELD_STEPS[4:] + [AppointmentStep.CONFIRMATION, AppointmentStep.CANCELLED],
    AppointmentStep.ORDER_DESCRIPTION: FIELD_STEPS[5:] + [AppointmentStep.CONFIRMATION, AppointmentStep.CANCELLED],
    AppointmentStep.ADDRESS: [AppointmentStep.CONFIRMATION, AppointmentStep.CANCELLED],
    AppointmentStep.CONFIRMATION: [AppointmentStep.COMPLETED, AppointmentStep.CANCELLED],
    AppointmentStep.COMPLETED: [],
    AppointmentStep.CANCELLED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_step: AppointmentStep, to_step: AppointmentStep):
        self.from_step = from_step
        self.to_step = to_step
        super().__init__(f"Invalid transition: {from_step.value} -> {to_step.value}")


def can_transition(from_step: AppointmentStep, to_step: AppointmentStep) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_step, [])
    return to_step in allowed


def transition(from_step: AppointmentStep, to_step: AppointmentStep) -> AppointmentStep:
    """Perform step transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_step, to_step):
        raise InvalidTransitionError(from_step, to_step)
    return to_step


def next_missing_step(filled: dict) -> AppointmentStep:
    """First data step whose field is still empty, or confirmation when all are set."""
    for step in FIELD_STEPS:
        if not filled.get(step.value):
            return step
    return AppointmentStep.CONFIRMATION


def normalize_time_slot(value: Optional[str]) -> Optional[TimeSlot]:
    if not value:
        return None
    lowered = value.strip().lower()
    aliases = {
        "morning": TimeSlot.MORNING,
        "mañana": TimeSlot.MORNING,
        "manana": TimeSlot.MORNING,
        "afternoon": TimeSlot.AFTERNOON,
        "tarde": TimeSlot.AFTERNOON,
        "evening": TimeSlot.EVENING,
        "noche": TimeSlot.EVENING,
        "night": TimeSlot.EVENING,
    }
    return aliases.get(lowered)
