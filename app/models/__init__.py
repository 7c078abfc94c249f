"""Database models package."""

from .base import Base
from .enums import FriendRequestStatus
from .social import ChatMessage, FriendLink, User

__all__ = [
    "Base",
    "User",
    "FriendLink",
    "ChatMessage",
    "FriendRequestStatus",
]
