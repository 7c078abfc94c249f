"""WebSocket endpoint carrying the friends realtime relay."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

from fastapi import APIRouter, WebSocket, status
from fastapi.exceptions import HTTPException
from fastapi.websockets import WebSocketDisconnect, WebSocketState
from starlette.concurrency import run_in_threadpool

from app.api.deps import get_user_id_from_token
from app.config import get_settings
from app.database import get_db_session
from app.models import User
from soundwave.realtime import Connection, get_relay, safe_send_json
from soundwave.realtime.relay import ERROR

router = APIRouter(tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or {"type": "ping"}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            should_ping = False
            if interval <= 0:
                should_ping = True
            else:
                if now - last_activity >= interval and (
                    last_ping_sent is None or now - last_ping_sent >= interval
                ):
                    should_ping = True

            if should_ping:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


def _extract_token(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    return token or None


def _user_exists(user_id: int) -> bool:
    with get_db_session() as db:
        return db.get(User, user_id) is not None


async def _resolve_user_id(websocket: WebSocket) -> int | None:
    token = _extract_token(websocket)
    if token is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return None

    try:
        user_id = get_user_id_from_token(token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None

    if not await run_in_threadpool(_user_exists, user_id):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None
    return user_id


async def _receive_frame(websocket: WebSocket) -> str | bytes:
    """Return the next text or binary frame from *websocket*."""

    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", status.WS_1000_NORMAL_CLOSURE), message.get("reason"))
    text = message.get("text")
    if text is not None:
        return text
    return message.get("bytes") or b""


def parse_frame(raw_message: str) -> tuple[str, Any]:
    """Split a ``{"type": ..., "data": ...}`` frame into event name and payload.

    Raises :class:`ValueError` with a client facing message for bad frames.
    """

    try:
        frame = json.loads(raw_message)
    except json.JSONDecodeError:
        raise ValueError("Invalid payload") from None
    if not isinstance(frame, dict):
        raise ValueError("Message payload must be a JSON object")
    event = frame.get("type")
    if not isinstance(event, str) or not event:
        raise ValueError("Message type is required")
    return event, frame.get("data", {})


@router.websocket("/ws")
async def websocket_relay(websocket: WebSocket) -> None:
    """Relay presence, now playing, typing and private messages between friends."""

    user_id = await _resolve_user_id(websocket)
    if user_id is None:
        return

    relay = get_relay()
    await websocket.accept()
    connection = Connection(websocket=websocket, user_id=user_id)
    logger.debug("User %s connected as %s", user_id, connection.id)

    try:
        await relay.connect(connection)
        async for raw_message in iter_keepalive_messages(
            websocket,
            lambda: _receive_frame(websocket),
            timeout_seconds=settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
        ):
            if not raw_message:
                continue
            if isinstance(raw_message, bytes):
                await connection.emit(ERROR, {"error": "Invalid payload"})
                continue
            try:
                event, data = parse_frame(raw_message)
            except ValueError as exc:
                await connection.emit(ERROR, {"error": str(exc)})
                continue

            if event == "ping":
                await safe_send_json(websocket, {"type": "pong"})
                continue
            if event == "pong":
                continue
            try:
                await relay.handle(connection, event, data)
            except Exception:
                logger.exception("Failed to handle %s event from user %s", event, user_id)
                await connection.emit(ERROR, {"error": f"Failed to process event '{event}'"})
    finally:
        await relay.disconnect(connection)
        logger.debug("User %s disconnected (%s)", user_id, connection.id)
