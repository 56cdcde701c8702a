"""Pending local operations awaiting their realtime echo.

A realtime event only carries row data, so a client cannot tell from the
event alone whether it echoes its own optimistic write. Every optimistic
write records a ``PendingKey``; an incoming event that matches a pending key
is the echo and is consumed instead of being applied a second time.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass


@dataclass(frozen=True)
class PendingKey:
    """(entity, action, actor, target), e.g. ``("post_likes", "insert", viewer, post)``."""

    entity: str
    action: str
    actor: str
    target: str


@dataclass(frozen=True)
class PendingOperations:
    """Immutable multiset of pending keys.

    The same key may be pending more than once (like, unlike, like again
    before any echo arrives), so membership is counted.
    """

    keys: tuple[PendingKey, ...] = ()

    def add(self, key: PendingKey) -> PendingOperations:
        """Return a copy holding one more occurrence of ``key``."""
        return PendingOperations(self.keys + (key,))

    def discard(self, key: PendingKey) -> PendingOperations:
        """Remove one occurrence of ``key`` if present."""
        if key not in self.keys:
            return self
        index = self.keys.index(key)
        return PendingOperations(self.keys[:index] + self.keys[index + 1:])

    def __contains__(self, key: object) -> bool:
        return key in self.keys

    def __len__(self) -> int:
        return len(self.keys)

    def __iter__(self) -> Iterator[PendingKey]:
        return iter(self.keys)
