"""Payload models exchanged over the realtime socket."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, StrictStr

# Largest value an INTEGER primary key column accepts.
MAX_ID = 2**31 - 1


class InboundPayload(BaseModel):
    """Base class for client supplied event payloads."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PrivateMessagePayload(InboundPayload):
    receiver_id: int = Field(..., alias="receiverId", gt=0, le=MAX_ID)
    content: StrictStr = Field(..., min_length=1)


class TypingPayload(InboundPayload):
    receiver_id: int = Field(..., alias="receiverId", gt=0, le=MAX_ID)


class CurrentlyPlayingPayload(InboundPayload):
    song_id: StrictStr | int = Field(..., alias="songId")


class SenderProfile(BaseModel):
    """Display fields attached to a message for the receiving client."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    username: str
    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")
    profile_picture: str | None = Field(default=None, alias="profilePicture")


class MessageRecord(BaseModel):
    """Persisted private message.

    ``sender`` holds the bare user id until the record has been enriched with
    the sender's :class:`SenderProfile`.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: int
    sender: SenderProfile | int
    receiver: int
    content: str
    created_at: datetime = Field(..., alias="createdAt")

    @property
    def sender_id(self) -> int:
        if isinstance(self.sender, SenderProfile):
            return self.sender.id
        return self.sender

    def to_event(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
