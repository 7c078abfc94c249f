"""Monitoring helpers and metric registry for the relay and API."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
