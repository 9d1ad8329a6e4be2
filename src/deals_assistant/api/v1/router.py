"""Version 1 of the assistant API, mounted under ``/api/v1``."""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from deals_assistant.api.v1 import chat, conversations, health
from deals_assistant.context import AppContext
from deals_assistant.dependencies import get_app_context

API_PREFIX = "/api/v1"

router = APIRouter(prefix=API_PREFIX)
router.include_router(health.router)
router.include_router(chat.router)
router.include_router(conversations.router)


@router.get("/", summary="API information", tags=["v1"])
async def api_info(context: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    """Version, model routing and the endpoint map."""
    settings = context.settings
    return {
        "version": "v1",
        "service": settings.app_name,
        "status": "active" if settings.features.enabled else "disabled",
        "models": {
            "simple": settings.llm.simple_model,
            "complex": settings.llm.complex_model,
        },
        "features": settings.features.model_dump(),
        "endpoints": {
            "health": f"{API_PREFIX}/health",
            "ready": f"{API_PREFIX}/ready",
            "ai": {
                name: f"{API_PREFIX}/ai/{name}"
                for name in ("chat", "feedback", "health", "stats", "logs", "conversations", "cleanup")
            },
        },
    }
