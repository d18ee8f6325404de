"""
Health check and readiness probe endpoints.
"""
import logging
from typing import Dict, Any
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.orm import Session
from redis.exceptions import RedisError
from api.dependencies import get_db, get_hub
from core.config import settings
from realtime.hub import ChatHub
from services.redis_client import get_redis_client

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

SERVICE_VERSION = "1.0.0"


def check_database(db: Session) -> Dict[str, Any]:
    """Run ``SELECT 1`` against the configured database."""
    try:
        db.execute(text("SELECT 1")).fetchone()
        return {"healthy": True, "message": "Database connection OK"}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {"healthy": False, "message": f"Database connection failed: {str(e)}"}


def check_redis() -> Dict[str, Any]:
    """PING Redis (only checked when a Redis-backed feature is enabled)."""
    try:
        get_redis_client(settings).ping()
        return {"healthy": True, "message": "Redis connection OK"}
    except RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return {"healthy": False, "message": f"Redis connection failed: {str(e)}"}


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(db: Session = Depends(get_db), hub: ChatHub = Depends(get_hub)):
    """
    Liveness probe with database status and live hub counts.

    Example Response:
        {
            "status": "healthy",
            "service": "chat-core",
            "database": {"healthy": true, "message": "Database connection OK"},
            "hub": {"connections": {"connections": 3, ...}, "presence": {...}}
        }
    """
    database = check_database(db)
    return {
        "status": "healthy" if database["healthy"] else "degraded",
        "service": settings.service_name,
        "version": SERVICE_VERSION,
        "database": database,
        "hub": hub.stats()
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness probe: 200 only when every configured dependency is reachable,
    503 otherwise.
    """
    checks = {"database": check_database(db)}
    if settings.rate_limit_backend == "redis" or settings.relay_enabled:
        checks["redis"] = check_redis()

    if all(check["healthy"] for check in checks.values()):
        return {"status": "ready", "checks": checks}

    unhealthy_services = [service for service, check in checks.items() if not check["healthy"]]
    logger.warning(f"Readiness check failed for services: {', '.join(unhealthy_services)}")
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"status": "not_ready", "checks": checks}
    )
