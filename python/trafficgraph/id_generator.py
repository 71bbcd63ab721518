"""Sequential identifiers for hosts discovered within a session."""

from __future__ import annotations


class IdGenerator:
    """Monotonically increasing identifier generator rendering ids as strings.

    Each session owns its own generator, so no locking is required.
    """

    __slots__ = ("_next",)

    def __init__(self, initial: int = 0) -> None:
        self._next = int(initial)

    def next_id(self) -> str:
        self._next += 1
        return str(self._next)

    @property
    def issued(self) -> int:
        return self._next


__all__ = ["IdGenerator"]
