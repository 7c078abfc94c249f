"""Application service helpers."""

from .relay_store import SqlRelayStore, load_friend_ids

__all__ = [
    "SqlRelayStore",
    "load_friend_ids",
]
