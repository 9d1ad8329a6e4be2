"""Health check endpoints."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from deals_assistant.context import AppContext
from deals_assistant.dependencies import get_app_context
from deals_assistant.utils.logging import get_logger

logger = get_logger("health")

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(context: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    """
    Liveness endpoint.

    Does not touch external dependencies; healthy whenever the process is serving.
    """
    logger.debug("Health check requested")
    return {
        "status": "healthy",
        "app_name": context.settings.app_name,
        "environment": context.settings.environment.value,
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness_check(context: AppContext = Depends(get_app_context)):
    """
    Readiness endpoint.

    Checks the KV store behind the cache and rate limiter. Without a
    configured KV store the in-memory tier is always ready.

    Returns 503 if the KV store does not answer.
    """
    logger.debug("Readiness check requested")

    checks = {"cache": False}
    try:
        checks["cache"] = await context.cache.ping()
    except (RedisError, OSError) as e:
        logger.warning(f"Cache connection check failed: {e}")

    body = {
        "status": "ready" if all(checks.values()) else "not_ready",
        "app_name": context.settings.app_name,
        "environment": context.settings.environment.value,
        "backend": context.cache.backend,
        "checks": checks,
    }
    if not all(checks.values()):
        logger.warning(f"Readiness check failed: {checks}")
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return body


@router.get("/ai/health", summary="Model provider reachability")
async def ai_health(context: AppContext = Depends(get_app_context)) -> JSONResponse:
    """Runs a trivial completion against the simple model; 503 when it fails."""
    health = await context.orchestrator.health_check()
    return JSONResponse(
        status_code=status.HTTP_200_OK if health["healthy"] else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"success": health["healthy"], **health},
    )
