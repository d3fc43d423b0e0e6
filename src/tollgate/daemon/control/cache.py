"""Process-local LRU cache for execution contexts.

Ephemeral by construction: entries vanish on eviction or restart and are
never written back anywhere. Balances and idempotency records are always
read from the store, so a miss only costs a rebuild.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Generic, Hashable, Protocol, TypeVar

from ..utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class InstanceCache(Protocol[K, V]):
    def get(self, key: K) -> V | None: ...

    def set(self, key: K, value: V) -> None: ...

    def has(self, key: K) -> bool: ...

    def clear(self) -> None: ...

    @property
    def size(self) -> int: ...


@dataclass
class CacheEntry(Generic[V]):
    value: V
    last_accessed: float


class LRUCache(Generic[K, V]):
    """Exact LRU with O(1) get/set.

    The OrderedDict keeps entries in recency order (oldest first), so the
    eviction victim is always the first key.
    """

    def __init__(self, max_size: int):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self._entries: OrderedDict[K, CacheEntry[V]] = OrderedDict()

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        entry.last_accessed = time.monotonic()
        self._entries.move_to_end(key)
        return entry.value

    def set(self, key: K, value: V) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        elif len(self._entries) >= self.max_size:
            self._evict_lru()
        self._entries[key] = CacheEntry(value=value, last_accessed=time.monotonic())

    def has(self, key: K) -> bool:
        return key in self._entries

    def peek_last_accessed(self, key: K) -> float | None:
        entry = self._entries.get(key)
        return entry.last_accessed if entry else None

    @property
    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def _evict_lru(self) -> None:
        key, _ = self._entries.popitem(last=False)
        logger.info("Evicted cached context", event="cache_evicted", key=str(key), size=len(self._entries))

    def clear(self) -> None:
        self._entries.clear()


class NullCache(Generic[K, V]):
    """Cache that never holds anything; every lookup is a miss."""

    def get(self, key: K) -> V | None:
        return None

    def set(self, key: K, value: V) -> None:
        return None

    def has(self, key: K) -> bool:
        return False

    def clear(self) -> None:
        return None

    @property
    def size(self) -> int:
        return 0
