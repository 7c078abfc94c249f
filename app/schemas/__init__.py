"""Pydantic schemas for API payloads."""

from .users import (
    CurrentlyPlaying,
    FriendRead,
    FriendRequestCreate,
    FriendRequestList,
    FriendRequestRead,
    PublicUser,
)

__all__ = [
    "CurrentlyPlaying",
    "FriendRead",
    "FriendRequestCreate",
    "FriendRequestList",
    "FriendRequestRead",
    "PublicUser",
]
