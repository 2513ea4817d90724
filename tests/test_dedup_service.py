from giftbot.services.dedup_service import (
    MAX_FINGERPRINTS,
    DeliveryDeduplicator,
    build_fingerprint,
    collect_message_ids,
)


def _delivery(*message_ids):
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "changes": [
                    {"value": {"messages": [{"id": mid, "from": "573001112233"} for mid in message_ids]}}
                ]
            }
        ],
    }


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestFingerprint:
    def test_collects_ids_from_nested_envelope(self):
        assert sorted(collect_message_ids(_delivery("wamid.2", "wamid.1"))) == ["wamid.1", "wamid.2"]

    def test_collects_ids_from_flat_entry_value(self):
        payload = {"object": "x", "entry": [{"value": {"messages": [{"id": "wamid.9"}]}}]}
        assert collect_message_ids(payload) == ["wamid.9"]

    def test_fingerprint_is_order_independent(self):
        assert build_fingerprint(_delivery("b", "a")) == build_fingerprint(_delivery("a", "b")) == "a|b"

    def test_fingerprint_without_ids_uses_payload_prefix(self):
        payload = {"object": "whatsapp_business_account", "entry": [{"changes": [{"value": {"statuses": []}}]}]}
        fingerprint = build_fingerprint(payload)
        assert fingerprint.startswith('{"entry"')
        assert len(fingerprint) <= 100


class TestDeliveryDeduplicator:
    def test_first_delivery_is_not_duplicate(self):
        assert DeliveryDeduplicator().is_duplicate(_delivery("wamid.1")) is False

    def test_redelivery_is_duplicate(self):
        dedup = DeliveryDeduplicator()
        dedup.is_duplicate(_delivery("wamid.1"))
        assert dedup.is_duplicate(_delivery("wamid.1")) is True

    def test_different_messages_are_not_duplicates(self):
        dedup = DeliveryDeduplicator()
        dedup.is_duplicate(_delivery("wamid.1"))
        assert dedup.is_duplicate(_delivery("wamid.2")) is False

    def test_evicts_oldest_half_when_full(self):
        dedup = DeliveryDeduplicator()
        for index in range(MAX_FINGERPRINTS + 1):
            dedup.is_duplicate(_delivery(f"wamid.{index}"))

        assert len(dedup) == MAX_FINGERPRINTS + 1 - 500
        assert dedup.is_duplicate(_delivery(f"wamid.{MAX_FINGERPRINTS}")) is True
        assert dedup.is_duplicate(_delivery("wamid.0")) is False


class TestMarkMessage:
    def test_second_mark_within_hour_is_rejected(self):
        clock = FakeClock()
        dedup = DeliveryDeduplicator(clock=clock)
        assert dedup.mark_message("wamid.1") is True
        clock.now += 1800
        assert dedup.mark_message("wamid.1") is False

    def test_mark_expires_after_an_hour(self):
        clock = FakeClock()
        dedup = DeliveryDeduplicator(clock=clock)
        dedup.mark_message("wamid.1")
        clock.now += 3601
        assert dedup.mark_message("wamid.1") is True
