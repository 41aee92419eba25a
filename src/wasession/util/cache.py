from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable, Iterator
from typing import Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """
    Bounded mapping with time-based expiry.

    Invariants:
    - never holds more than `max_size` entries; inserting into a full cache
      evicts the oldest insertion first,
    - an entry is never returned once `ttl_s` has elapsed since it was inserted,
      whatever its value (expiry is measured from insertion, not last access),
    - expired entries are purged on every write and every `len()`.
    """

    def __init__(
        self,
        max_size: int,
        ttl_s: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_evict: Callable[[K, V], None] | None = None,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        if ttl_s <= 0:
            raise ValueError("ttl_s must be positive")
        self.max_size = max_size
        self.ttl_s = ttl_s
        self._clock = clock
        self._on_evict = on_evict
        self._data: OrderedDict[K, tuple[float, V]] = OrderedDict()

    def _expired(self, inserted_at: float, now: float) -> bool:
        return now - inserted_at >= self.ttl_s

    def _evict(self, key: K) -> None:
        _, value = self._data.pop(key)
        if self._on_evict is not None:
            self._on_evict(key, value)

    def purge(self) -> int:
        now = self._clock()
        stale = [k for k, (t, _) in self._data.items() if self._expired(t, now)]
        for k in stale:
            self._evict(k)
        return len(stale)

    def set(self, key: K, value: V) -> None:
        self.purge()
        if key in self._data:
            inserted_at, _ = self._data[key]
            self._data[key] = (inserted_at, value)
            return
        while len(self._data) >= self.max_size:
            oldest = next(iter(self._data))
            self._evict(oldest)
        self._data[key] = (self._clock(), value)

    def get(self, key: K, default: V | None = None) -> V | None:
        item = self._data.get(key)
        if item is None:
            return default
        inserted_at, value = item
        if self._expired(inserted_at, self._clock()):
            self._evict(key)
            return default
        return value

    def pop(self, key: K, default: V | None = None) -> V | None:
        item = self._data.pop(key, None)
        return default if item is None else item[1]

    def clear(self) -> None:
        self._data.clear()

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        self.purge()
        return len(self._data)

    def __iter__(self) -> Iterator[K]:
        self.purge()
        return iter(list(self._data))
