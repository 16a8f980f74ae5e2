"""
Health and Monitoring Router.

Public, unauthenticated endpoints for health checks and operational data of the
Livestream Engagement API.

Endpoints Provided:
- `/healthcheck`: Lightweight liveness check.
- `/monitoring/ping`: Connectivity test.
- `/monitoring/detailed`: Status of the database (connectivity and table
  access) and the derived-attribute caches, reported per component.
- `/monitoring/cache/stats`: Hit/miss/eviction counters of the icon hash and
  theme caches.

Architectural Design:
- Public Access: No caller identity is required, so probes and uptime checkers
  can use these endpoints directly.
- Graceful Degradation: The detailed check reports each component separately
  and marks the service "degraded" instead of failing when one is unhealthy.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends

from core.cache import DerivedAttributeCaches, get_caches
from core.database import get_database_info, health_check as database_health_check
from core.logging_config import get_logger
from core.storage import Storage
from .dependencies import get_storage

logger = get_logger(__name__)

SERVICE_NAME = "Livestream Engagement API"
VERSION = "1.0.0"

health_router = APIRouter(tags=["Health & Monitoring"])

monitoring_router = APIRouter(prefix="/monitoring", tags=["Health & Monitoring"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@health_router.get("/healthcheck")
async def health_check() -> Dict[str, Any]:
    """
    Basic health check endpoint (no authentication required)

    Returns:
        Dict with status, timestamp, and version info
    """
    logger.debug("Health check requested")

    return {
        "status": "healthy",
        "timestamp": _now(),
        "version": VERSION,
        "service": SERVICE_NAME,
    }


@monitoring_router.get("/ping")
async def ping() -> Dict[str, str]:
    """Simple ping endpoint for connectivity testing"""
    logger.debug("Ping requested")
    return {"message": "pong", "timestamp": _now(), "version": VERSION}


@monitoring_router.get("/detailed")
async def detailed_health_check(
    storage: Storage = Depends(get_storage),
    caches: DerivedAttributeCaches = Depends(get_caches),
) -> Dict[str, Any]:
    """Detailed health check with component status"""
    logger.info("Detailed health check requested")

    health_status = {
        "status": "healthy",
        "timestamp": _now(),
        "version": VERSION,
        "service": SERVICE_NAME,
        "components": {},
    }

    db_info = await get_database_info(storage.engine)
    db_health = await database_health_check(storage.engine)
    health_status["components"]["database"] = {
        "status": db_health["status"],
        "tables_accessible": db_health.get("tables_accessible", False),
        "info": db_info,
    }
    if db_health["status"] != "healthy":
        health_status["status"] = "degraded"

    cache_health = caches.health_check()
    health_status["components"]["cache"] = cache_health
    if cache_health.get("status") != "healthy":
        health_status["status"] = "degraded"

    return health_status


@monitoring_router.get("/cache/stats")
async def get_cache_stats(
    caches: DerivedAttributeCaches = Depends(get_caches),
) -> Dict[str, Any]:
    """Get cache statistics (no authentication required for monitoring)"""
    logger.info("Cache stats requested")
    return {"cache_stats": caches.stats(), "timestamp": _now()}
