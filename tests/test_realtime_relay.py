from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

import pytest
from fastapi.websockets import WebSocketState

from app.monitoring.metrics import realtime_events_total, realtime_store_errors_total
from soundwave.realtime import Connection, ConnectionRegistry, RealtimeRelay, RelayStoreError
from soundwave.realtime.schemas import MessageRecord, SenderProfile


NOW = datetime(2026, 10, 19, 12, 30, tzinfo=timezone.utc)


class DummyWebSocket:
    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)

    def events(self, event_type: str | None = None) -> list[dict[str, Any]]:
        return [frame for frame in self.sent if event_type is None or frame["type"] == event_type]


class SlowWebSocket(DummyWebSocket):
    """Track how many deliveries are in flight at once."""

    active = 0
    peak = 0

    async def send_json(self, payload: dict[str, Any]) -> None:
        cls = type(self)
        cls.active += 1
        cls.peak = max(cls.peak, cls.active)
        try:
            await asyncio.sleep(0.01)
            self.sent.append(payload)
        finally:
            cls.active -= 1


class FakeStore:
    def __init__(self, friends: dict[int, set[int]] | None = None) -> None:
        self.friends = friends or {}
        self.failing: set[str] = set()
        self.presence: list[tuple[int, bool, datetime]] = []
        self.playing: list[tuple[int, str, datetime]] = []
        self.messages: list[MessageRecord] = []

    def _check(self, operation: str) -> None:
        if operation in self.failing:
            raise RelayStoreError(f"{operation} failed")

    async def get_friend_ids(self, user_id: int) -> set[int]:
        self._check("get_friend_ids")
        return set(self.friends.get(user_id, set()))

    async def set_presence(self, user_id: int, online: bool, last_seen: datetime) -> None:
        self._check("set_presence")
        self.presence.append((user_id, online, last_seen))

    async def set_currently_playing(self, user_id: int, song_id: str, timestamp: datetime) -> None:
        self._check("set_currently_playing")
        self.playing.append((user_id, song_id, timestamp))

    async def create_message(self, sender_id: int, receiver_id: int, content: str) -> MessageRecord:
        self._check("create_message")
        record = MessageRecord(
            id=len(self.messages) + 1,
            sender=sender_id,
            receiver=receiver_id,
            content=content,
            created_at=NOW,
        )
        self.messages.append(record)
        return record

    async def enrich_sender(self, record: MessageRecord) -> MessageRecord:
        self._check("enrich_sender")
        profile = SenderProfile(id=record.sender_id, username=f"user{record.sender_id}", first_name="User")
        return record.model_copy(update={"sender": profile})


@pytest.fixture(autouse=True)
def reset_relay_metrics() -> None:
    realtime_events_total.reset()
    realtime_store_errors_total.reset()
    yield
    realtime_events_total.reset()
    realtime_store_errors_total.reset()


@pytest.fixture()
def store() -> FakeStore:
    return FakeStore({1: {2, 3}, 2: {1}, 3: {1}, 4: set()})


@pytest.fixture()
def relay(store: FakeStore) -> RealtimeRelay:
    return RealtimeRelay(store, ConnectionRegistry(), clock=lambda: NOW)


async def _join(relay: RealtimeRelay, user_id: int) -> tuple[Connection, DummyWebSocket]:
    websocket = DummyWebSocket()
    connection = Connection(websocket=websocket, user_id=user_id)
    await relay.connect(connection)
    websocket.sent.clear()
    return connection, websocket


@pytest.mark.anyio("asyncio")
async def test_connect_notifies_only_connected_friends(relay, store):
    _, friend_ws = await _join(relay, 2)
    _, stranger_ws = await _join(relay, 4)

    await relay.connect(Connection(websocket=DummyWebSocket(), user_id=1))

    assert friend_ws.sent == [{"type": "friendOnline", "data": {"userId": 1}}]
    assert stranger_ws.sent == []
    assert (1, True, NOW) in store.presence


@pytest.mark.anyio("asyncio")
async def test_disconnect_notifies_friend_offline_with_last_seen(relay, store):
    _, friend_ws = await _join(relay, 2)
    connection, _ = await _join(relay, 1)
    friend_ws.sent.clear()

    assert await relay.disconnect(connection) is True

    assert friend_ws.sent == [
        {"type": "friendOffline", "data": {"userId": 1, "lastSeen": NOW.isoformat()}}
    ]
    assert relay.registry.lookup(1) is None
    assert store.presence[-1] == (1, False, NOW)


@pytest.mark.anyio("asyncio")
async def test_last_seen_is_not_before_connection_time(store):
    relay = RealtimeRelay(store, ConnectionRegistry())
    _, friend_ws = await _join(relay, 2)
    connected_at = datetime.now(timezone.utc)
    connection, _ = await _join(relay, 1)
    friend_ws.sent.clear()

    await relay.disconnect(connection)

    [frame] = friend_ws.sent
    assert frame["type"] == "friendOffline"
    last_seen = datetime.fromisoformat(frame["data"]["lastSeen"])
    assert last_seen.tzinfo is not None
    assert last_seen >= connected_at
    assert store.presence[-1][2] == last_seen


@pytest.mark.anyio("asyncio")
async def test_disconnect_of_unregistered_connection_is_noop(relay, store):
    connection = Connection(websocket=DummyWebSocket(), user_id=9)

    assert await relay.disconnect(connection) is False
    assert store.presence == []


@pytest.mark.anyio("asyncio")
async def test_superseded_connection_disconnect_keeps_newer_connection(relay, store):
    _, friend_ws = await _join(relay, 2)
    first, _ = await _join(relay, 1)
    second, _ = await _join(relay, 1)
    friend_ws.sent.clear()

    assert await relay.disconnect(first) is False

    assert relay.registry.lookup(1) is second
    assert friend_ws.events("friendOffline") == []
    assert store.presence[-1] == (1, True, NOW)


@pytest.mark.anyio("asyncio")
async def test_presence_write_failure_still_notifies_friends(relay, store, caplog):
    _, friend_ws = await _join(relay, 2)
    store.failing.add("set_presence")

    with caplog.at_level(logging.WARNING):
        await relay.connect(Connection(websocket=DummyWebSocket(), user_id=1))

    assert friend_ws.sent == [{"type": "friendOnline", "data": {"userId": 1}}]
    assert relay.registry.lookup(1) is not None
    assert realtime_store_errors_total.value("set_presence") == 1.0
    assert any(
        record.levelno == logging.WARNING and "set_presence" in record.getMessage()
        for record in caplog.records
    )


@pytest.mark.anyio("asyncio")
async def test_friend_lookup_failure_skips_fan_out(relay, store, caplog):
    _, friend_ws = await _join(relay, 2)
    store.failing.add("get_friend_ids")

    with caplog.at_level(logging.WARNING):
        await relay.connect(Connection(websocket=DummyWebSocket(), user_id=1))

    assert friend_ws.sent == []
    assert relay.registry.lookup(1) is not None
    assert realtime_store_errors_total.value("get_friend_ids") == 1.0


@pytest.mark.anyio("asyncio")
async def test_private_message_delivered_to_connected_receiver(relay, store):
    sender, sender_ws = await _join(relay, 1)
    _, receiver_ws = await _join(relay, 2)

    record = await relay.private_message(sender, {"receiverId": 2, "content": "hello"})

    assert record is not None
    assert len(store.messages) == 1
    [received] = receiver_ws.sent
    [confirmation] = sender_ws.events("messageSent")
    assert received["type"] == "newMessage"
    assert received["data"] == confirmation["data"]
    assert received["data"]["content"] == "hello"
    assert received["data"]["receiver"] == 2
    assert received["data"]["sender"]["username"] == "user1"
    assert received["data"]["sender"]["firstName"] == "User"
    assert received["data"]["createdAt"].startswith("2026-10-19T12:30")


@pytest.mark.anyio("asyncio")
async def test_private_message_to_offline_receiver_is_persisted(relay, store):
    sender, sender_ws = await _join(relay, 1)

    await relay.private_message(sender, {"receiverId": 2, "content": "are you there?"})

    assert [message.content for message in store.messages] == ["are you there?"]
    assert [frame["type"] for frame in sender_ws.sent] == ["messageSent"]


@pytest.mark.anyio("asyncio")
async def test_private_message_store_failure_reports_message_error(relay, store, caplog):
    sender, sender_ws = await _join(relay, 1)
    _, receiver_ws = await _join(relay, 2)
    store.failing.add("create_message")
    sender_ws.sent.clear()

    with caplog.at_level(logging.ERROR):
        record = await relay.private_message(sender, {"receiverId": 2, "content": "lost"})

    assert record is None
    assert sender_ws.sent == [{"type": "messageError", "data": {"error": "Failed to send message"}}]
    assert receiver_ws.sent == []
    assert realtime_store_errors_total.value("create_message") == 1.0
    assert any(record.levelno == logging.ERROR for record in caplog.records)


@pytest.mark.anyio("asyncio")
async def test_private_message_enrichment_failure_delivers_bare_record(relay, store):
    sender, sender_ws = await _join(relay, 1)
    _, receiver_ws = await _join(relay, 2)
    store.failing.add("enrich_sender")

    await relay.private_message(sender, {"receiverId": 2, "content": "plain"})

    [received] = receiver_ws.sent
    assert received["type"] == "newMessage"
    assert received["data"]["sender"] == 1
    assert sender_ws.events("messageSent")[0]["data"] == received["data"]


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize(
    "payload",
    [
        {"content": "missing receiver"},
        {"receiverId": 2},
        {"receiverId": 2, "content": ""},
        {"receiverId": 2, "content": 42},
        {"receiverId": 10**30, "content": "x"},
        {"receiverId": 0, "content": "x"},
        "not an object",
    ],
)
async def test_private_message_rejects_malformed_payload(relay, store, payload):
    sender, sender_ws = await _join(relay, 1)

    await relay.private_message(sender, payload)

    assert sender_ws.sent == [{"type": "messageError", "data": {"error": "Invalid message payload"}}]
    assert store.messages == []


@pytest.mark.anyio("asyncio")
async def test_private_message_rejects_content_over_limit(store):
    relay = RealtimeRelay(store, ConnectionRegistry(), message_max_length=5, clock=lambda: NOW)
    sender, sender_ws = await _join(relay, 1)

    await relay.private_message(sender, {"receiverId": 2, "content": "too long"})

    assert sender_ws.sent == [{"type": "messageError", "data": {"error": "Message is too long"}}]
    assert store.messages == []


@pytest.mark.anyio("asyncio")
async def test_typing_forwarded_to_connected_receiver_only(relay):
    sender, sender_ws = await _join(relay, 1)
    _, receiver_ws = await _join(relay, 2)
    sender_ws.sent.clear()

    await relay.typing(sender, {"receiverId": 2})
    await relay.typing(sender, {"receiverId": 3})

    assert receiver_ws.sent == [{"type": "userTyping", "data": {"userId": 1}}]
    assert sender_ws.sent == []


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize("receiver_id", ["nobody", 10**30, -3])
async def test_typing_rejects_malformed_payload(relay, receiver_id):
    sender, sender_ws = await _join(relay, 1)

    await relay.typing(sender, {"receiverId": receiver_id})

    assert sender_ws.sent == [{"type": "error", "data": {"error": "Invalid typing payload"}}]


@pytest.mark.anyio("asyncio")
async def test_currently_playing_persisted_and_broadcast(relay, store):
    listener, listener_ws = await _join(relay, 1)
    _, friend_ws = await _join(relay, 2)
    _, stranger_ws = await _join(relay, 4)
    listener_ws.sent.clear()

    await relay.update_currently_playing(listener, {"songId": "track-9"})

    assert store.playing == [(1, "track-9", NOW)]
    assert friend_ws.sent == [
        {
            "type": "friendCurrentlyPlaying",
            "data": {"userId": 1, "songId": "track-9", "timestamp": NOW.isoformat()},
        }
    ]
    assert stranger_ws.sent == []
    assert listener_ws.sent == []


@pytest.mark.anyio("asyncio")
async def test_currently_playing_store_failure_still_broadcasts(relay, store, caplog):
    listener, _ = await _join(relay, 1)
    _, friend_ws = await _join(relay, 2)
    store.failing.add("set_currently_playing")

    with caplog.at_level(logging.WARNING):
        await relay.update_currently_playing(listener, {"songId": 77})

    [frame] = friend_ws.sent
    assert frame["type"] == "friendCurrentlyPlaying"
    assert frame["data"]["songId"] == 77
    assert realtime_store_errors_total.value("set_currently_playing") == 1.0


@pytest.mark.anyio("asyncio")
async def test_currently_playing_rejects_missing_song(relay, store):
    listener, listener_ws = await _join(relay, 1)

    await relay.update_currently_playing(listener, {})

    assert listener_ws.sent == [
        {"type": "error", "data": {"error": "Invalid currently playing payload"}}
    ]
    assert store.playing == []


@pytest.mark.anyio("asyncio")
async def test_handle_dispatches_and_counts_events(relay):
    sender, sender_ws = await _join(relay, 1)
    _, receiver_ws = await _join(relay, 2)
    sender_ws.sent.clear()

    await relay.handle(sender, "typing", {"receiverId": 2})
    await relay.handle(sender, "shout", {})

    assert receiver_ws.sent == [{"type": "userTyping", "data": {"userId": 1}}]
    assert sender_ws.sent == [{"type": "error", "data": {"error": "Unsupported event 'shout'"}}]
    assert realtime_events_total.value("typing", "in") == 1.0
    assert realtime_events_total.value("unknown", "in") == 1.0
    assert realtime_events_total.value("userTyping", "out") == 1.0


@pytest.mark.anyio("asyncio")
async def test_fan_out_respects_concurrency_limit():
    friends = {1: {10, 11, 12, 13, 14}}
    store = FakeStore(friends)
    relay = RealtimeRelay(store, ConnectionRegistry(), fanout_concurrency=2, clock=lambda: NOW)
    sockets = []
    for friend_id in friends[1]:
        websocket = SlowWebSocket()
        relay.registry.register(friend_id, Connection(websocket=websocket, user_id=friend_id))
        sockets.append(websocket)
    SlowWebSocket.active = 0
    SlowWebSocket.peak = 0

    await relay.connect(Connection(websocket=DummyWebSocket(), user_id=1))

    assert all(ws.sent == [{"type": "friendOnline", "data": {"userId": 1}}] for ws in sockets)
    assert SlowWebSocket.peak == 2


@pytest.mark.anyio("asyncio")
async def test_fan_out_skips_closed_sockets(relay):
    _, friend_ws = await _join(relay, 2)
    _, other_ws = await _join(relay, 3)
    friend_ws.application_state = WebSocketState.DISCONNECTED

    await relay.connect(Connection(websocket=DummyWebSocket(), user_id=1))

    assert friend_ws.sent == []
    assert other_ws.sent == [{"type": "friendOnline", "data": {"userId": 1}}]
