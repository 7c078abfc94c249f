"""Prometheus-compatible metrics endpoint."""

from fastapi import APIRouter, Response

from app.monitoring.metrics import realtime_connections
from app.monitoring.registry import registry
from soundwave.realtime.relay import registry as connection_registry


router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=Response)
def export_metrics() -> Response:
    """Expose collected metrics for Prometheus scraping."""

    realtime_connections.labels("relay").set(len(connection_registry))
    return Response(content=registry.render(), media_type="text/plain; version=0.0.4")
