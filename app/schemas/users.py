"""Schemas related to user profiles and friendships."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.enums import FriendRequestStatus


class CamelModel(BaseModel):
    """Serialize with the camelCase keys the web client expects."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PublicUser(CamelModel):
    """Minimal public-facing user information."""

    id: int
    username: str
    first_name: str
    last_name: str | None = None
    profile_picture: str | None = None


class CurrentlyPlaying(CamelModel):
    song: str
    timestamp: datetime | None = None


class FriendRead(PublicUser):
    """Friend entry including the presence fields maintained by the relay."""

    is_online: bool = False
    last_seen: datetime | None = None
    currently_playing: CurrentlyPlaying | None = None


class FriendRequestRead(CamelModel):
    """Serialized friend request including participants."""

    id: int
    requester: PublicUser
    addressee: PublicUser
    status: FriendRequestStatus
    created_at: datetime
    responded_at: datetime | None = None


class FriendRequestList(CamelModel):
    """Categorized friend requests for convenience in the UI."""

    incoming: list[FriendRequestRead] = Field(default_factory=list)
    outgoing: list[FriendRequestRead] = Field(default_factory=list)


class FriendRequestCreate(CamelModel):
    """Payload for sending a friend request."""

    receiver_id: int = Field(..., description="Target user id")
