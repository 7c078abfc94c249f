"""Metric definitions for the realtime relay."""

from __future__ import annotations

from .registry import registry


realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Number of users holding a live websocket connection on this instance.",
    label_names=("scope",),
)

realtime_events_total = registry.counter(
    "realtime_events_total",
    "Count of realtime events handled by the relay.",
    label_names=("event", "direction"),
)

realtime_store_errors_total = registry.counter(
    "realtime_store_errors_total",
    "Number of failed persistence calls made by the relay.",
    label_names=("operation",),
)
