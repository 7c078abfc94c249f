"""Presence, now-playing, private message and typing relay for friends."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable

from pydantic import ValidationError

from app.config import get_settings
from app.monitoring.metrics import realtime_events_total, realtime_store_errors_total

from .connection import Connection
from .registry import ConnectionRegistry
from .schemas import (
    CurrentlyPlayingPayload,
    MessageRecord,
    PrivateMessagePayload,
    TypingPayload,
)
from .store import RelayStore, RelayStoreError


logger = logging.getLogger(__name__)

# Inbound events
PRIVATE_MESSAGE = "privateMessage"
TYPING = "typing"
UPDATE_CURRENTLY_PLAYING = "updateCurrentlyPlaying"

# Outbound events
FRIEND_ONLINE = "friendOnline"
FRIEND_OFFLINE = "friendOffline"
FRIEND_CURRENTLY_PLAYING = "friendCurrentlyPlaying"
NEW_MESSAGE = "newMessage"
MESSAGE_SENT = "messageSent"
MESSAGE_ERROR = "messageError"
USER_TYPING = "userTyping"
ERROR = "error"

Handler = Callable[[Connection, Any], Awaitable[Any]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RealtimeRelay:
    """Relay socket events between friends.

    Every handler reads the friend graph and writes presence or messages
    through a :class:`RelayStore`; deliveries only ever reach users that hold a
    live connection in the :class:`ConnectionRegistry`.
    """

    def __init__(
        self,
        store: RelayStore,
        registry: ConnectionRegistry | None = None,
        *,
        fanout_concurrency: int = 32,
        message_max_length: int = 2000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._registry = registry if registry is not None else ConnectionRegistry()
        self._fanout_concurrency = max(int(fanout_concurrency), 1)
        self._message_max_length = message_max_length
        self._clock = clock
        self._handlers: Dict[str, Handler] = {
            PRIVATE_MESSAGE: self.private_message,
            TYPING: self.typing,
            UPDATE_CURRENTLY_PLAYING: self.update_currently_playing,
        }

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    async def connect(self, connection: Connection) -> None:
        """Register *connection* and announce the user to connected friends."""

        user_id = connection.user_id
        superseded = self._registry.register(user_id, connection)
        if superseded is not None and superseded is not connection:
            logger.info(
                "User %s opened a new connection; superseding %s", user_id, superseded.id
            )

        await self._best_effort(
            "set_presence", self._store.set_presence(user_id, True, self._clock())
        )
        friend_ids = await self._friend_ids(user_id)
        await self._fan_out(friend_ids, FRIEND_ONLINE, {"userId": user_id})

    async def disconnect(self, connection: Connection) -> bool:
        """Unregister *connection* and announce the user offline.

        Returns ``False`` without side effects when the connection is no
        longer the registered one for its user.
        """

        user_id = connection.user_id
        if not self._registry.unregister(user_id, connection):
            logger.debug(
                "Ignoring disconnect of stale connection %s for user %s", connection.id, user_id
            )
            return False

        last_seen = self._clock()
        await self._best_effort(
            "set_presence", self._store.set_presence(user_id, False, last_seen)
        )
        friend_ids = await self._friend_ids(user_id)
        await self._fan_out(
            friend_ids,
            FRIEND_OFFLINE,
            {"userId": user_id, "lastSeen": last_seen.isoformat()},
        )
        return True

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def handle(self, connection: Connection, event: str, data: Any) -> None:
        """Dispatch one inbound event from *connection*."""

        handler = self._handlers.get(event)
        if handler is None:
            realtime_events_total.labels("unknown", "in").inc()
            await connection.emit(ERROR, {"error": f"Unsupported event '{event}'"})
            return
        realtime_events_total.labels(event, "in").inc()
        await handler(connection, data)

    async def private_message(self, connection: Connection, data: Any) -> MessageRecord | None:
        try:
            payload = PrivateMessagePayload.model_validate(data)
        except ValidationError as exc:
            logger.debug("Rejected private message from user %s: %s", connection.user_id, exc)
            await connection.emit(MESSAGE_ERROR, {"error": "Invalid message payload"})
            return None

        if len(payload.content) > self._message_max_length:
            await connection.emit(MESSAGE_ERROR, {"error": "Message is too long"})
            return None

        try:
            record = await self._store.create_message(
                connection.user_id, payload.receiver_id, payload.content
            )
        except RelayStoreError:
            realtime_store_errors_total.labels("create_message").inc()
            logger.exception("Error sending private message from user %s", connection.user_id)
            await connection.emit(MESSAGE_ERROR, {"error": "Failed to send message"})
            return None

        try:
            record = await self._store.enrich_sender(record)
        except RelayStoreError:
            realtime_store_errors_total.labels("enrich_sender").inc()
            logger.warning(
                "Could not load sender details for message %s; delivering bare record",
                record.id,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )

        event_payload = record.to_event()
        receiver = self._registry.lookup(payload.receiver_id)
        if receiver is not None:
            await receiver.emit(NEW_MESSAGE, event_payload)
        await connection.emit(MESSAGE_SENT, event_payload)
        return record

    async def typing(self, connection: Connection, data: Any) -> None:
        try:
            payload = TypingPayload.model_validate(data)
        except ValidationError:
            await connection.emit(ERROR, {"error": "Invalid typing payload"})
            return

        receiver = self._registry.lookup(payload.receiver_id)
        if receiver is not None:
            await receiver.emit(USER_TYPING, {"userId": connection.user_id})

    async def update_currently_playing(self, connection: Connection, data: Any) -> None:
        try:
            payload = CurrentlyPlayingPayload.model_validate(data)
        except ValidationError:
            await connection.emit(ERROR, {"error": "Invalid currently playing payload"})
            return

        user_id = connection.user_id
        timestamp = self._clock()
        await self._best_effort(
            "set_currently_playing",
            self._store.set_currently_playing(user_id, str(payload.song_id), timestamp),
        )
        friend_ids = await self._friend_ids(user_id)
        await self._fan_out(
            friend_ids,
            FRIEND_CURRENTLY_PLAYING,
            {"userId": user_id, "songId": payload.song_id, "timestamp": timestamp.isoformat()},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _best_effort(self, operation: str, write: Awaitable[None]) -> None:
        try:
            await write
        except RelayStoreError:
            realtime_store_errors_total.labels(operation).inc()
            logger.warning(
                "Realtime store failed during %s; continuing with in-memory values",
                operation,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )

    async def _friend_ids(self, user_id: int) -> set[int]:
        try:
            return set(await self._store.get_friend_ids(user_id))
        except RelayStoreError:
            realtime_store_errors_total.labels("get_friend_ids").inc()
            logger.warning(
                "Could not load friends of user %s; skipping fan-out",
                user_id,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return set()

    async def _fan_out(self, recipients: Iterable[int], event: str, payload: dict[str, Any]) -> int:
        """Deliver *event* to every recipient holding a live connection."""

        targets: list[Connection] = []
        for recipient_id in set(recipients):
            connection = self._registry.lookup(recipient_id)
            if connection is not None:
                targets.append(connection)
        if not targets:
            return 0

        semaphore = asyncio.Semaphore(self._fanout_concurrency)

        async def deliver(target: Connection) -> bool:
            async with semaphore:
                return await target.emit(event, payload)

        results = await asyncio.gather(*(deliver(target) for target in targets))
        return sum(1 for delivered in results if delivered)


# ---------------------------------------------------------------------------
# Module level lifecycle helpers
# ---------------------------------------------------------------------------


registry = ConnectionRegistry()

_relay: RealtimeRelay | None = None


def configure_realtime(store: RelayStore) -> RealtimeRelay:
    """Bind the process-wide relay to *store*."""

    global _relay
    settings = get_settings()
    _relay = RealtimeRelay(
        store,
        registry,
        fanout_concurrency=settings.realtime_fanout_concurrency,
        message_max_length=settings.chat_message_max_length,
    )
    return _relay


def get_relay() -> RealtimeRelay:
    if _relay is None:
        raise RuntimeError("Realtime relay is not configured")
    return _relay


async def startup_realtime(store: RelayStore) -> None:
    configure_realtime(store)
    logger.info("Realtime relay ready")


async def shutdown_realtime() -> None:
    registry.clear()
    logger.info("Realtime relay stopped")


__all__ = [
    "RealtimeRelay",
    "configure_realtime",
    "get_relay",
    "registry",
    "shutdown_realtime",
    "startup_realtime",
    "utcnow",
]
