import time
from collections import OrderedDict
from typing import Any, Callable


class TTLCache:
    """Small in-process cache with per-entry expiry and LRU eviction.

    Entries are stamped with ``time.monotonic`` so wall-clock jumps never
    resurrect or expire them early.
    """

    def __init__(self, *, max_items: int = 64, ttl_s: float = 300, clock: Callable[[], float] = time.monotonic) -> None:
        self._max_items = max(1, int(max_items or 1))
        self._ttl_s = max(0.001, float(ttl_s or 0.001))
        self._clock = clock
        self._items: "OrderedDict[str, tuple[float, Any]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._items)

    def get(self, key: str) -> Any | None:
        item = self._items.get(key)
        if item is None:
            return None
        expires_at, value = item
        if expires_at <= self._clock():
            del self._items[key]
            return None
        self._items.move_to_end(key)
        return value

    def set(self, key: str, value: Any) -> None:
        self._items[key] = (self._clock() + self._ttl_s, value)
        self._items.move_to_end(key)
        while len(self._items) > self._max_items:
            self._items.popitem(last=False)

    def invalidate(self, key: str) -> None:
        self._items.pop(key, None)
