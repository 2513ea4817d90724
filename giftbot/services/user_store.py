from typing import Callable, Dict, Generic, Iterator, Optional, Tuple, TypeVar

T = TypeVar("T")


class UserStore(Generic[T]):
    """In-process map of per-user values with create-on-first-use.

    Each component owns its own store; nothing here is shared or persisted.
    """

    def __init__(self, factory: Callable[[str], T]):
        self._factory = factory
        self._items: Dict[str, T] = {}

    def get(self, user_id: str) -> Optional[T]:
        return self._items.get(user_id)

    def get_or_create(self, user_id: str) -> T:
        item = self._items.get(user_id)
        if item is None:
            item = self._factory(user_id)
            self._items[user_id] = item
        return item

    def pop(self, user_id: str) -> Optional[T]:
        return self._items.pop(user_id, None)

    def items(self) -> Iterator[Tuple[str, T]]:
        # Snapshot so callers may evict while iterating.
        return iter(list(self._items.items()))

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._items

    def __len__(self) -> int:
        return len(self._items)
