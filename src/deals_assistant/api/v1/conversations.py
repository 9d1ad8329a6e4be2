"""Stored conversations of the signed-in user, plus retention cleanup."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from deals_assistant.context import AppContext
from deals_assistant.dependencies import get_app_context, require_user_id
from deals_assistant.utils.logging import get_logger

logger = get_logger("conversations_api")

router = APIRouter(prefix="/ai", tags=["conversations"])

NOT_FOUND = "Conversation not found"


@router.get("/conversations", summary="List the user's conversations")
async def list_conversations(
    context: AppContext = Depends(get_app_context),
    user_id: str = Depends(require_user_id),
) -> Dict[str, Any]:
    conversations = await context.conversations.list_conversations(user_id)
    return {"success": True, "conversations": conversations}


@router.post(
    "/conversations",
    status_code=status.HTTP_201_CREATED,
    summary="Start an empty conversation",
)
async def create_conversation(
    context: AppContext = Depends(get_app_context),
    user_id: str = Depends(require_user_id),
) -> Dict[str, Any]:
    conversation = await context.conversations.create_conversation(user_id)
    return {"success": True, "conversation": conversation}


@router.get(
    "/conversations/{conversation_id}",
    summary="A conversation with its messages",
    description="Assistant messages carry the deals and coupons they showed.",
)
async def get_conversation(
    conversation_id: str,
    context: AppContext = Depends(get_app_context),
    user_id: str = Depends(require_user_id),
) -> Dict[str, Any]:
    found = await context.conversations.get_conversation(conversation_id, user_id)
    if found is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND)
    conversation, messages = found
    return {"success": True, "conversation": conversation, "messages": messages}


@router.delete("/conversations/{conversation_id}", summary="Archive a conversation")
async def delete_conversation(
    conversation_id: str,
    context: AppContext = Depends(get_app_context),
    user_id: str = Depends(require_user_id),
) -> Dict[str, Any]:
    """Archived conversations drop out of the list; their messages are kept."""
    if not await context.conversations.archive_conversation(conversation_id, user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND)
    return {"success": True}


@router.delete("/cleanup", summary="Delete stored messages and chat logs past retention")
async def cleanup(
    days: int = Query(30, ge=1, le=365, description="Days of history to keep"),
    context: AppContext = Depends(get_app_context),
    user_id: str = Depends(require_user_id),
) -> Dict[str, Any]:
    logger.info(f"Retention cleanup requested by {user_id} (keeping {days} days)")
    result = await context.conversations.cleanup(days_to_keep=days)
    logs_kept = await context.chat_logger.clear_old_logs(days_to_keep=days)
    return {"success": True, **result, "logsKept": logs_kept}
