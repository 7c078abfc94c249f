"""Process-wide registry of live websocket connections keyed by user."""

from __future__ import annotations

from typing import Dict, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from .connection import Connection


class ConnectionRegistry:
    """Track at most one active connection per user.

    Registering a second connection for the same user replaces the first one;
    there is no multi-device fan-out. All methods are synchronous so that every
    mutation happens atomically on the event loop without an explicit lock.
    """

    def __init__(self) -> None:
        self._connections: Dict[int, "Connection"] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._connections

    def register(self, user_id: int, connection: "Connection") -> "Connection | None":
        """Store *connection* for *user_id* and return the handle it superseded."""

        previous = self._connections.get(user_id)
        self._connections[user_id] = connection
        return previous

    def unregister(self, user_id: int, connection: "Connection | None" = None) -> bool:
        """Drop the entry for *user_id*.

        Without *connection* the entry is removed unconditionally. With it, the
        entry is only removed while it still points at that exact handle.
        Returns ``True`` when an entry was removed; absent keys are a no-op.
        """

        current = self._connections.get(user_id)
        if current is None:
            return False
        if connection is not None and current is not connection:
            return False
        del self._connections[user_id]
        return True

    def lookup(self, user_id: int) -> "Connection | None":
        return self._connections.get(user_id)

    def clear(self) -> None:
        self._connections.clear()
