"""
Health check endpoints for production deployment.

Provides:
- /health - Basic liveness check (is the app running?)
- /ready - Readiness check (are PostgreSQL and Redis reachable?)
- /metrics - Subscription and game counters for monitoring
"""

import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Response

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

# Service references (set during app initialization)
_db_pool = None
_redis_client = None
_registry = None
_memory_store = None


def set_health_dependencies(
    db_pool=None,
    redis_client=None,
    registry=None,
    memory_store=None,
):
    """Set dependencies for health checks."""
    global _db_pool, _redis_client, _registry, _memory_store
    _db_pool = db_pool
    _redis_client = redis_client
    _registry = registry
    _memory_store = memory_store


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def health_check():
    """
    Basic liveness check - is the app running?

    Always 200 while the process is alive.
    """
    return {"status": "ok", "timestamp": _timestamp()}


@router.get("/ready")
async def readiness_check():
    """
    Readiness check - can the app handle requests?

    Returns 503 if a configured backing service is unreachable.
    """
    checks = {}
    overall_healthy = True

    if _db_pool is not None:
        try:
            async with _db_pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            checks["database"] = {"status": "ok"}
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            checks["database"] = {"status": "error", "message": str(e)}
            overall_healthy = False
    else:
        checks["database"] = {"status": "not_configured"}

    if _redis_client is not None:
        try:
            await _redis_client.ping()
            checks["redis"] = {"status": "ok"}
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            checks["redis"] = {"status": "error", "message": str(e)}
            overall_healthy = False
    else:
        checks["redis"] = {"status": "not_configured"}

    return Response(
        content=json.dumps({
            "status": "ok" if overall_healthy else "degraded",
            "checks": checks,
            "timestamp": _timestamp(),
        }),
        status_code=200 if overall_healthy else 503,
        media_type="application/json",
    )


@router.get("/metrics")
async def metrics():
    """Expose subscription and game counters."""
    metrics_data = {"timestamp": _timestamp()}

    if _registry is not None:
        metrics_data["subscribed_games"] = _registry.game_count()
        metrics_data["connected_sockets"] = _registry.socket_count()

    if _memory_store is not None:
        metrics_data["stored_games"] = len(_memory_store)
    elif _db_pool is not None:
        try:
            async with _db_pool.acquire() as conn:
                metrics_data["stored_games"] = await conn.fetchval("SELECT COUNT(*) FROM games")
        except Exception as e:
            logger.warning(f"Failed to collect database metrics: {e}")

    return metrics_data
