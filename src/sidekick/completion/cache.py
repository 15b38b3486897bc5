"""Bounded FIFO cache of completions keyed by a trailing-context fingerprint."""

from __future__ import annotations

from collections import OrderedDict

DEFAULT_CAPACITY = 100
DEFAULT_FINGERPRINT_LENGTH = 200


def fingerprint(text: str, length: int = DEFAULT_FINGERPRINT_LENGTH) -> str:
    """Cache key: the last *length* characters of *text*, verbatim.

    Not a hash. Distinct contexts sharing the same tail collide on purpose,
    trading precision for a small, predictable key space.
    """
    return text[-length:] if length > 0 else text


class CompletionCache:
    """Fixed-capacity map with first-in-first-out eviction.

    Reads never reorder entries and re-inserting an existing key keeps its
    original position, so eviction order is pure insertion order.
    Not safe for concurrent mutation; callers serialize access.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"Cache capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._entries: OrderedDict[str, str] = OrderedDict()

    def get(self, key: str) -> str | None:
        return self._entries.get(key)

    def put(self, key: str, value: str) -> None:
        if key not in self._entries and len(self._entries) >= self.capacity:
            self._entries.popitem(last=False)
        self._entries[key] = value

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> list[str]:
        """Keys in insertion order, oldest first."""
        return list(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
