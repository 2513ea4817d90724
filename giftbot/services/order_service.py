import asyncio
import re
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from giftbot.logging_config import get_logger
from giftbot.services.sheets_service import ORDER_COLUMNS, OrderStore

logger = get_logger("order_service")

CACHE_TTL_SECONDS = 5 * 60
MAX_DISPLAYED_ORDERS = 3
MAX_DESCRIPTION_CHARS = 50

SEARCH_DATE_PATTERN = re.compile(r"(\d{1,2})[/.-](\d{1,2})(?:[/.-](\d{2,4}))?")
SEARCH_NAME_PATTERN = re.compile(
    r"(?:me llamo|soy|para|de|cliente|nombre|pedido de)\s+([A-Za-zÁÉÍÓÚÑáéíóúñ\s]{2,25})",
    re.IGNORECASE,
)
CAPITALIZED_WORD_PATTERN = re.compile(r"\b[A-ZÁÉÍÓÚÑ][a-záéíóúñ]{3,}\b")


@dataclass
class CachedOrder:
    id: str
    name: str
    giftee: str
    date: str
    time_slot: str
    order_description: str
    timestamp: str

    def matches(self, term: str) -> bool:
        needle = term.strip().lower()
        if not needle:
            return False
        return any(needle in value.lower() for value in (self.name, self.date, self.giftee))


def _row_to_order(index: int, row: List[str]) -> CachedOrder:
    padded = list(row) + [""] * (len(ORDER_COLUMNS) - len(row))
    values = dict(zip(ORDER_COLUMNS, padded))
    return CachedOrder(
        id=f"ORD-{index + 1}",
        name=values["name"],
        giftee=values["giftee"],
        date=values["date"],
        time_slot=values["time_slot"],
        order_description=values["order_description"],
        timestamp=values["timestamp"],
    )


def extract_search_terms(message: str) -> List[str]:
    """Candidate search terms in the order they should be tried."""
    terms: List[str] = []

    for match in SEARCH_DATE_PATTERN.finditer(message or ""):
        terms.append(match.group(0))

    for match in SEARCH_NAME_PATTERN.finditer(message or ""):
        candidate = " ".join(match.group(1).split())
        if candidate:
            terms.append(candidate)

    for match in CAPITALIZED_WORD_PATTERN.finditer(message or ""):
        terms.append(match.group(0))

    unique: List[str] = []
    for term in terms:
        if term not in unique:
            unique.append(term)
    return unique


def format_orders_for_display(orders: List[CachedOrder]) -> str:
    if not orders:
        return "No encontré pedidos con esos datos."

    lines = [f"Encontré {len(orders)} pedido(s):"]
    for order in orders[:MAX_DISPLAYED_ORDERS]:
        description = order.order_description
        if len(description) > MAX_DESCRIPTION_CHARS:
            description = description[:MAX_DESCRIPTION_CHARS] + "..."
        lines.append(
            f"\n📦 {order.id}\n"
            f"👤 Cliente: {order.name}\n"
            f"🎁 Para: {order.giftee}\n"
            f"📅 Fecha: {order.date} ({order.time_slot})\n"
            f"🌹 Pedido: {description}"
        )

    remaining = len(orders) - MAX_DISPLAYED_ORDERS
    if remaining > 0:
        lines.append(f"\nY {remaining} pedido(s) más.")
    return "\n".join(lines)


class OrderLookup:
    """Substring search over orders, backed by a single shared cache."""

    def __init__(self, store: OrderStore, clock: Callable[[], float] = time.monotonic):
        self.store = store
        self._clock = clock
        self._orders: List[CachedOrder] = []
        self._fetched_at: Optional[float] = None

    def cache_is_fresh(self) -> bool:
        return self._fetched_at is not None and self._clock() - self._fetched_at <= CACHE_TTL_SECONDS

    def invalidate(self) -> None:
        self._fetched_at = None

    async def refresh(self) -> List[CachedOrder]:
        rows = await asyncio.to_thread(self.store.fetch_all)
        # first row is the header
        self._orders = [_row_to_order(index, row) for index, row in enumerate(rows[1:], start=1) if any(row)]
        self._fetched_at = self._clock()
        logger.info("Order cache rebuilt", extra={"context": {"orders": len(self._orders)}})
        return self._orders

    async def find_orders(self, search_term: str) -> List[CachedOrder]:
        if self.cache_is_fresh():
            cached = [order for order in self._orders if order.matches(search_term)]
            if cached:
                return cached

        orders = await self.refresh()
        return [order for order in orders if order.matches(search_term)]

    async def search_message(self, message: str, extra_terms: Optional[List[str]] = None) -> List[CachedOrder]:
        """Try each extracted term until one yields results."""
        terms = extract_search_terms(message) + [term for term in (extra_terms or []) if term]
        for term in terms:
            orders = await self.find_orders(term)
            if orders:
                logger.info("Orders found", extra={"context": {"term": term, "count": len(orders)}})
                return orders
        return []
