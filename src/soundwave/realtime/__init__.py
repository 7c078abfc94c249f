"""Realtime relay between friends connected over websockets."""

from .connection import Connection, safe_send_json  # noqa: F401
from .registry import ConnectionRegistry  # noqa: F401
from .relay import (  # noqa: F401
    RealtimeRelay,
    configure_realtime,
    get_relay,
    shutdown_realtime,
    startup_realtime,
)
from .store import RelayStore, RelayStoreError  # noqa: F401

__all__ = [
    "configure_realtime",
    "startup_realtime",
    "shutdown_realtime",
    "get_relay",
    "Connection",
    "ConnectionRegistry",
    "RealtimeRelay",
    "RelayStore",
    "RelayStoreError",
    "safe_send_json",
]
