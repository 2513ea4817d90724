import asyncio

from giftbot.services.order_service import (
    CachedOrder,
    OrderLookup,
    extract_search_terms,
    format_orders_for_display,
)

HEADER = ["nombre", "felicitado", "fecha", "franja_horaria", "pedido", "timestamp"]
ROWS = [
    HEADER,
    ["Ana López", "Marta", "14/02/2025", "morning", "Rosa roja premium", "2025-02-01T10:00:00"],
    ["Carlos Ruiz", "Lucía", "20/03/2025", "evening", "Duo de rosas", "2025-03-01T10:00:00"],
]


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _order(index: int, description: str = "Rosa") -> CachedOrder:
    return CachedOrder(
        id=f"ORD-{index}",
        name="Ana López",
        giftee="Marta",
        date="14/02/2025",
        time_slot="morning",
        order_description=description,
        timestamp="",
    )


class TestSearchTerms:
    def test_dates_come_first(self):
        assert extract_search_terms("pedido de Ana para el 14/02")[0] == "14/02"

    def test_name_phrases_and_capitalized_words(self):
        terms = extract_search_terms("soy Carlos Ruiz")
        assert "Carlos Ruiz" in terms
        assert "Carlos" in terms

    def test_terms_are_unique(self):
        terms = extract_search_terms("Marta Marta")
        assert terms == ["Marta"]


class TestCachedOrder:
    def test_matches_name_date_or_giftee(self):
        order = _order(2)
        assert order.matches("ana")
        assert order.matches("14/02")
        assert order.matches("MARTA")
        assert not order.matches("Rosa")
        assert not order.matches("  ")


class TestFormatOrders:
    def test_empty(self):
        assert format_orders_for_display([]) == "No encontré pedidos con esos datos."

    def test_caps_display_and_truncates_description(self):
        orders = [_order(index, "x" * 60) for index in range(2, 7)]
        text = format_orders_for_display(orders)
        assert text.startswith("Encontré 5 pedido(s):")
        assert "ORD-4" in text
        assert "ORD-5" not in text
        assert "x" * 50 + "..." in text
        assert "Y 2 pedido(s) más." in text


class TestOrderLookup:
    def test_rows_become_orders_with_row_ids(self, make_order_store):
        lookup = OrderLookup(make_order_store(ROWS))
        orders = asyncio.run(lookup.refresh())
        assert [order.id for order in orders] == ["ORD-2", "ORD-3"]
        assert orders[1].giftee == "Lucía"

    def test_fresh_cache_is_reused(self, make_order_store):
        store = make_order_store(ROWS)
        clock = FakeClock()
        lookup = OrderLookup(store, clock=clock)

        async def scenario():
            await lookup.find_orders("Ana")
            clock.now += 60
            return await lookup.find_orders("Carlos")

        orders = asyncio.run(scenario())
        assert [order.name for order in orders] == ["Carlos Ruiz"]
        assert store.fetch_count == 1

    def test_stale_cache_is_rebuilt(self, make_order_store):
        store = make_order_store(ROWS)
        clock = FakeClock()
        lookup = OrderLookup(store, clock=clock)

        async def scenario():
            await lookup.find_orders("Ana")
            clock.now += 301
            await lookup.find_orders("Ana")

        asyncio.run(scenario())
        assert store.fetch_count == 2

    def test_invalidated_cache_is_rebuilt_once(self, make_order_store):
        store = make_order_store(ROWS)
        lookup = OrderLookup(store, clock=FakeClock())

        async def scenario():
            await lookup.find_orders("Ana")
            await lookup.find_orders("Ana")
            lookup.invalidate()
            await lookup.find_orders("Ana")

        asyncio.run(scenario())
        assert store.fetch_count == 2

    def test_cache_miss_triggers_refresh(self, make_order_store):
        store = make_order_store(ROWS)
        lookup = OrderLookup(store, clock=FakeClock())

        async def scenario():
            await lookup.refresh()
            store.rows = ROWS + [["Sofía Díaz", "Pedro", "01/04/2025", "afternoon", "Mini", ""]]
            return await lookup.find_orders("Sofía")

        orders = asyncio.run(scenario())
        assert [order.id for order in orders] == ["ORD-4"]
        assert store.fetch_count == 2

    def test_search_message_tries_terms_in_order(self, make_order_store):
        lookup = OrderLookup(make_order_store(ROWS))
        orders = asyncio.run(lookup.search_message("el pedido para el 20/03 por favor"))
        assert [order.name for order in orders] == ["Carlos Ruiz"]

    def test_search_message_uses_extra_terms(self, make_order_store):
        lookup = OrderLookup(make_order_store(ROWS))
        orders = asyncio.run(lookup.search_message("¿cómo va mi pedido?", ["Ana López"]))
        assert [order.id for order in orders] == ["ORD-2"]

    def test_no_match(self, make_order_store):
        lookup = OrderLookup(make_order_store(ROWS))
        assert asyncio.run(lookup.search_message("nada por aquí")) == []
