"""
Health check endpoint.

- GET /api/health — process alive, version, uptime, and which external
  clients initialised at startup (no network calls).
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from lunachat.clients import Clients, get_clients
from lunachat.config import settings
from lunachat.core.structured_logging import SERVICE_NAME, get_uptime_s

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(clients: Clients = Depends(get_clients)):
    """Cheap health check."""
    client_status = clients.status()
    return {
        "status": "ok" if all(client_status.values()) else "degraded",
        "version": settings.app_version,
        "service": SERVICE_NAME,
        "uptime_s": round(get_uptime_s(), 1),
        "clients": client_status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
