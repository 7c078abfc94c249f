"""SQLAlchemy implementation of the realtime relay store."""

from __future__ import annotations

import logging
from contextlib import AbstractContextManager
from datetime import datetime, timezone
from typing import Callable, TypeVar

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.database import get_db_session
from app.models import ChatMessage, FriendLink, FriendRequestStatus, User
from soundwave.realtime.schemas import MessageRecord, SenderProfile
from soundwave.realtime.store import RelayStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionScope = Callable[[], AbstractContextManager[Session]]


def load_friend_ids(user_id: int, db: Session) -> set[int]:
    """Return ids on the other side of every accepted link touching *user_id*."""

    stmt = select(FriendLink.requester_id, FriendLink.addressee_id).where(
        FriendLink.status == FriendRequestStatus.ACCEPTED,
        or_(
            FriendLink.requester_id == user_id,
            FriendLink.addressee_id == user_id,
        ),
    )
    friends: set[int] = set()
    for requester_id, addressee_id in db.execute(stmt):
        friends.add(addressee_id if requester_id == user_id else requester_id)
    return friends


class SqlRelayStore:
    """Run relay reads and writes in the threadpool with short-lived sessions."""

    def __init__(self, session_scope: SessionScope | None = None) -> None:
        self._session_scope = session_scope or get_db_session

    async def _run(self, operation: str, work: Callable[[Session], T]) -> T:
        def call() -> T:
            with self._session_scope() as db:
                try:
                    return work(db)
                except SQLAlchemyError:
                    db.rollback()
                    raise

        try:
            return await run_in_threadpool(call)
        except SQLAlchemyError as exc:
            raise RelayStoreError(f"{operation} failed") from exc

    async def get_friend_ids(self, user_id: int) -> set[int]:
        return await self._run("get_friend_ids", lambda db: load_friend_ids(user_id, db))

    async def set_presence(self, user_id: int, online: bool, last_seen: datetime) -> None:
        def work(db: Session) -> None:
            db.execute(
                update(User)
                .where(User.id == user_id)
                .values(is_online=online, last_seen=last_seen)
            )
            db.commit()

        await self._run("set_presence", work)

    async def set_currently_playing(
        self, user_id: int, song_id: str, timestamp: datetime
    ) -> None:
        def work(db: Session) -> None:
            db.execute(
                update(User)
                .where(User.id == user_id)
                .values(currently_playing_song=song_id, currently_playing_at=timestamp)
            )
            db.commit()

        await self._run("set_currently_playing", work)

    async def create_message(
        self, sender_id: int, receiver_id: int, content: str
    ) -> MessageRecord:
        def work(db: Session) -> MessageRecord:
            created_at = datetime.now(timezone.utc)
            message = ChatMessage(
                sender_id=sender_id,
                receiver_id=receiver_id,
                content=content,
                created_at=created_at,
            )
            db.add(message)
            db.commit()
            return MessageRecord(
                id=message.id,
                sender=sender_id,
                receiver=receiver_id,
                content=content,
                created_at=created_at,
            )

        return await self._run("create_message", work)

    async def enrich_sender(self, record: MessageRecord) -> MessageRecord:
        def work(db: Session) -> MessageRecord:
            sender = db.get(User, record.sender_id)
            if sender is None:
                logger.debug("Sender %s of message %s no longer exists", record.sender_id, record.id)
                return record
            profile = SenderProfile(
                id=sender.id,
                username=sender.username,
                first_name=sender.first_name,
                last_name=sender.last_name,
                profile_picture=sender.profile_picture,
            )
            return record.model_copy(update={"sender": profile})

        return await self._run("enrich_sender", work)
