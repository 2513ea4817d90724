import pytest

from giftbot.services.state_machine import (
    AppointmentStep,
    InvalidTransitionError,
    TimeSlot,
    can_transition,
    next_missing_step,
    normalize_time_slot,
    transition,
)


class TestTransitions:
    def test_forward_step_is_allowed(self):
        assert can_transition(AppointmentStep.NAME, AppointmentStep.GIFTEE) is True

    def test_skipping_filled_steps_is_allowed(self):
        assert can_transition(AppointmentStep.GIFTEE, AppointmentStep.ORDER_DESCRIPTION) is True

    def test_backward_step_is_rejected(self):
        assert can_transition(AppointmentStep.DATE, AppointmentStep.NAME) is False

    def test_confirmation_only_completes_or_cancels(self):
        assert can_transition(AppointmentStep.CONFIRMATION, AppointmentStep.COMPLETED) is True
        assert can_transition(AppointmentStep.CONFIRMATION, AppointmentStep.CANCELLED) is True
        assert can_transition(AppointmentStep.CONFIRMATION, AppointmentStep.ADDRESS) is False

    def test_every_data_step_can_cancel(self):
        for step in (
            AppointmentStep.NAME,
            AppointmentStep.GIFTEE,
            AppointmentStep.DATE,
            AppointmentStep.TIME_SLOT,
            AppointmentStep.ORDER_DESCRIPTION,
            AppointmentStep.ADDRESS,
        ):
            assert can_transition(step, AppointmentStep.CANCELLED)

    def test_terminal_steps_have_no_exits(self):
        assert can_transition(AppointmentStep.COMPLETED, AppointmentStep.NAME) is False
        assert can_transition(AppointmentStep.CANCELLED, AppointmentStep.NAME) is False

    def test_transition_returns_target(self):
        assert transition(AppointmentStep.ADDRESS, AppointmentStep.CONFIRMATION) == AppointmentStep.CONFIRMATION

    def test_invalid_transition_raises(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(AppointmentStep.ADDRESS, AppointmentStep.NAME)
        assert exc_info.value.from_step == AppointmentStep.ADDRESS
        assert "address -> name" in str(exc_info.value)


class TestNextMissingStep:
    def test_empty_state_starts_with_name(self):
        assert next_missing_step({}) == AppointmentStep.NAME

    def test_skips_filled_fields(self):
        filled = {"name": "Ana López", "giftee": "Marta", "address": "Calle 10 #5-20"}
        assert next_missing_step(filled) == AppointmentStep.DATE

    def test_all_filled_goes_to_confirmation(self):
        filled = {
            "name": "Ana López",
            "giftee": "Marta",
            "date": "14/02/2025",
            "time_slot": "morning",
            "order_description": "rosa roja",
            "address": "Calle 10 #5-20",
        }
        assert next_missing_step(filled) == AppointmentStep.CONFIRMATION


class TestNormalizeTimeSlot:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("morning", TimeSlot.MORNING),
            ("Mañana", TimeSlot.MORNING),
            ("tarde", TimeSlot.AFTERNOON),
            (" noche ", TimeSlot.EVENING),
            ("medianoche", None),
            (None, None),
        ],
    )
    def test_aliases(self, value, expected):
        assert normalize_time_slot(value) == expected
