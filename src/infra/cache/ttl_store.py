"""Bounded in-memory key/value table with TTL and an injected clock.

Replaces ad-hoc module-level dicts with manual sweeps. Eviction policy:
- An entry expires `ttl_seconds` after it was last written or touched.
- When `max_size` is reached, expired entries are dropped first, then the
  least recently touched entry.

Not thread-safe; intended for a single asyncio event loop. Callers that
mutate values must serialize per key themselves.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from src.shared.clock import Clock

V = TypeVar("V")


@dataclass
class _Slot(Generic[V]):
    value: V
    touched_at: datetime


class KeyedTTLStore(Generic[V]):
    """Per-key store with max-size + TTL eviction."""

    def __init__(self, *, max_size: int, ttl_seconds: float, clock: Clock) -> None:
        if max_size <= 0:
            msg = f"max_size must be positive, got {max_size}"
            raise ValueError(msg)
        if ttl_seconds <= 0:
            msg = f"ttl_seconds must be positive, got {ttl_seconds}"
            raise ValueError(msg)
        self._max_size = max_size
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._slots: OrderedDict[str, _Slot[V]] = OrderedDict()

    def put(self, key: str, value: V) -> list[tuple[str, V]]:
        """Insert or replace a value. Returns entries evicted to make room."""
        evicted: list[tuple[str, V]] = []
        if key not in self._slots and len(self._slots) >= self._max_size:
            evicted.extend(self.evict_expired())
            while len(self._slots) >= self._max_size:
                old_key, old_slot = self._slots.popitem(last=False)
                evicted.append((old_key, old_slot.value))
        self._slots[key] = _Slot(value=value, touched_at=self._clock.now())
        self._slots.move_to_end(key)
        return evicted

    def get(self, key: str) -> V | None:
        """Return the value, or None if absent or expired (expired entries are dropped)."""
        slot = self._slots.get(key)
        if slot is None:
            return None
        if self._is_expired(slot):
            del self._slots[key]
            return None
        return slot.value

    def touch(self, key: str) -> bool:
        """Refresh an entry's TTL. Returns False if the key is absent or expired."""
        if self.get(key) is None:
            return False
        self._slots[key].touched_at = self._clock.now()
        self._slots.move_to_end(key)
        return True

    def pop(self, key: str) -> V | None:
        slot = self._slots.pop(key, None)
        return slot.value if slot is not None else None

    def evict_expired(self) -> list[tuple[str, V]]:
        """Drop every expired entry and return them."""
        expired = [(k, s.value) for k, s in self._slots.items() if self._is_expired(s)]
        for key, _ in expired:
            del self._slots[key]
        return expired

    def values(self) -> list[V]:
        """Snapshot of live (non-expired) values."""
        return [s.value for s in self._slots.values() if not self._is_expired(s)]

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def __len__(self) -> int:
        return len(self._slots)

    def _is_expired(self, slot: _Slot[V]) -> bool:
        return self._clock.now() - slot.touched_at >= self._ttl
