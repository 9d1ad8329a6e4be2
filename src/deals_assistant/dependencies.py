"""FastAPI dependencies for route handlers."""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from deals_assistant.context import AppContext
from deals_assistant.services.orchestrator_service import ChatOrchestrator


def get_app_context(request: Request) -> AppContext:
    """The context built at startup; 503 until the lifespan has run."""
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return context


def get_orchestrator(request: Request) -> ChatOrchestrator:
    return get_app_context(request).orchestrator


def get_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
) -> Optional[str]:
    """Authenticated user id, forwarded by the auth layer in front of this service."""
    if x_user_id and x_user_id.strip():
        return x_user_id.strip()
    return None


def get_client_ip(request: Request) -> Optional[str]:
    """First hop of X-Forwarded-For, else the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def require_user_id(user_id: Optional[str] = Depends(get_user_id)) -> str:
    """401 for guests on routes that act on a user's own data."""
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return user_id
