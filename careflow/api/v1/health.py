"""
Health endpoints for the careflow backend.

Reports the realtime side: the change publisher connection and the status of
every tenant channel held by the change propagation client.
"""

from __future__ import annotations

from fastapi import APIRouter, Request

from ...core.config import get_app_env


router = APIRouter(prefix="/api/v1/health", tags=["health"])


@router.get("")
def health() -> dict:
    return {"status": "ok", "env": get_app_env()}


@router.get("/realtime")
def realtime_health(request: Request) -> dict:
    publisher = getattr(request.app.state, "change_publisher", None)
    client = getattr(request.app.state, "change_client", None)
    channels: dict = {}
    if client is not None:
        channels = {tenant: status.value for tenant, status in client.multiplexer.statuses().items()}
    return {
        "publisher": {
            "enabled": publisher is not None,
            "connected": bool(publisher and publisher.is_connected()),
        },
        "channels": channels,
    }
