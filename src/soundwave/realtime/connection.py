"""Websocket connection handles used by the realtime relay."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.monitoring.metrics import realtime_events_total


logger = logging.getLogger(__name__)


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Safely send JSON data through websocket, handling disconnections gracefully.

    Returns True if message was sent successfully, False otherwise.
    """
    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


@dataclass(eq=False, slots=True)
class Connection:
    """Live socket owned by one authenticated user."""

    websocket: WebSocket
    user_id: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    async def emit(self, event: str, payload: dict[str, Any]) -> bool:
        """Deliver a single named event to the client."""

        delivered = await safe_send_json(self.websocket, {"type": event, "data": payload})
        if delivered:
            realtime_events_total.labels(event, "out").inc()
        return delivered
