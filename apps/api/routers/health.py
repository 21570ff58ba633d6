"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import redis.asyncio as redis

from config import settings
from services.connectors.providers import connector_capabilities

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Overall system health: database, Redis and which platforms have OAuth apps configured.
    """
    platforms = connector_capabilities()
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "platforms": {name: "configured" if caps["configured"] else "missing" for name, caps in platforms.items()},
    }

    try:
        from database import engine

        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except (SQLAlchemyError, OSError) as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Redis only backs shared caching and rate limiting; both have local fallbacks.
    try:
        r = redis.from_url(settings.REDIS_URL)
        try:
            await r.ping()
        finally:
            await r.aclose()
        health_status["redis"] = "up"
    except (RedisError, OSError) as e:
        health_status["redis"] = f"down: {str(e)}"
        if settings.METRICS_CACHE_BACKEND == "redis":
            health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Ready once at least one platform can run an OAuth handshake."""
    platforms = connector_capabilities()
    configured = [name for name, caps in platforms.items() if caps["configured"]]
    if not configured:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "configured_platforms": []},
        )
    return {"ready": True, "configured_platforms": configured}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
