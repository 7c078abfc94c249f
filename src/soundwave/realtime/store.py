"""Persistence contract consumed by the realtime relay."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from .schemas import MessageRecord


class RelayStoreError(RuntimeError):
    """Raised by a store when a read or write against the database fails."""


class RelayStore(Protocol):
    """Operations the relay delegates to the persistence layer.

    Friend sets must be symmetric: if ``a`` is returned for ``b`` then ``b``
    is returned for ``a``.
    """

    async def get_friend_ids(self, user_id: int) -> set[int]:
        """Return identifiers of accepted friends of *user_id*."""

    async def set_presence(self, user_id: int, online: bool, last_seen: datetime) -> None:
        """Persist the online flag and last-seen timestamp."""

    async def set_currently_playing(
        self, user_id: int, song_id: str, timestamp: datetime
    ) -> None:
        """Persist the track the user is listening to."""

    async def create_message(
        self, sender_id: int, receiver_id: int, content: str
    ) -> MessageRecord:
        """Store a new private message and return it."""

    async def enrich_sender(self, record: MessageRecord) -> MessageRecord:
        """Return a copy of *record* carrying the sender's display fields."""
