"""AI assistant endpoints: chat (JSON or SSE), feedback, stats and chat logs."""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse

from deals_assistant.context import AppContext
from deals_assistant.dependencies import get_app_context, get_client_ip, get_user_id
from deals_assistant.models.chat import (
    ChatRequest,
    ChatResponse,
    ChatTurn,
    FeedbackRequest,
    FeedbackResponse,
    HistoryMessage,
    StreamEvent,
    StreamOutcome,
)
from deals_assistant.services.conversation_service import assistant_metadata
from deals_assistant.utils.logging import get_logger, get_request_id

logger = get_logger("chat_api")

router = APIRouter(prefix="/ai", tags=["ai"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_frame(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


def _wants_stream(request: Request, context: AppContext) -> bool:
    accept = request.headers.get("accept", "")
    return "text/event-stream" in accept and context.settings.features.streaming_enabled


async def _resolve_history(
    context: AppContext,
    client_history: Optional[List[HistoryMessage]],
    conversation_id: Optional[str],
    user_id: Optional[str],
) -> List[HistoryMessage]:
    """Client-held history wins; otherwise load the stored conversation."""
    max_history = context.settings.limits.max_conversation_history
    if client_history:
        logger.debug(f"Using {len(client_history)} messages from client history")
        return list(client_history)[-max_history:]
    if conversation_id:
        history = await context.conversations.load_history(conversation_id, user_id)
        logger.debug(f"Loaded {len(history)} messages for conversation {conversation_id}")
        return history
    return []


def _build_turn(
    message: str,
    user_id: Optional[str],
    ip: Optional[str],
    history: List[HistoryMessage],
    current_page: Optional[str] = None,
) -> ChatTurn:
    return ChatTurn(
        message=message,
        user_id=user_id,
        ip=ip,
        history=history,
        current_page=current_page,
        request_id=get_request_id() or str(uuid.uuid4()),
    )


async def _stream_turn(
    context: AppContext,
    turn: ChatTurn,
    conversation_id: Optional[str],
) -> AsyncIterator[str]:
    """Run the orchestrator in a task and relay its events as SSE frames."""
    queue: asyncio.Queue[Optional[StreamEvent]] = asyncio.Queue()

    async def emit(event: StreamEvent) -> None:
        await queue.put(event)

    async def run() -> StreamOutcome:
        try:
            return await context.orchestrator.chat_stream(turn, emit)
        finally:
            await queue.put(None)

    await context.chat_logger.log_stream_start(
        turn.request_id,
        turn.user_id,
        turn.message,
        {"conversationId": conversation_id, "streaming": True},
    )

    task = asyncio.create_task(run())
    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            yield sse_frame(event.to_payload())
        outcome = await task
    finally:
        if not task.done():
            task.cancel()

    if conversation_id or turn.user_id:
        await context.conversations.save_turn(
            conversation_id,
            turn.user_id,
            turn.message,
            outcome.content if outcome.success else None,
            assistant_metadata(outcome.deals, outcome.coupons) if outcome.success else None,
        )

    metadata: Dict[str, Any] = {
        "conversationId": conversation_id,
        "success": outcome.success,
        "streaming": True,
        "cached": outcome.cached,
        "tokensUsed": outcome.tokens_used,
        "dealsCount": len(outcome.deals),
        "couponsCount": len(outcome.coupons),
    }
    if outcome.intent:
        metadata["intent"] = outcome.intent
    if outcome.model:
        metadata["model"] = outcome.model
    if outcome.error:
        metadata["error"] = outcome.error
    await context.chat_logger.log_stream_end(
        turn.request_id,
        turn.user_id,
        turn.message,
        outcome.content if outcome.success else f"[ERROR: {outcome.error}]",
        metadata,
    )


def _streaming_response(
    context: AppContext, turn: ChatTurn, conversation_id: Optional[str]
) -> StreamingResponse:
    headers = dict(SSE_HEADERS)
    headers["X-Request-ID"] = turn.request_id
    return StreamingResponse(
        _stream_turn(context, turn, conversation_id),
        media_type="text/event-stream",
        headers=headers,
    )


async def _buffered_response(
    context: AppContext, turn: ChatTurn, conversation_id: Optional[str]
) -> JSONResponse:
    response: ChatResponse = await context.orchestrator.chat(turn)

    metadata: Dict[str, Any] = {
        "conversationId": conversation_id,
        "success": response.success,
        "streaming": False,
        "latencyMs": response.latency_ms,
        "cached": response.cached,
    }
    if response.intent:
        metadata["intent"] = response.intent
    if response.usage:
        metadata["tokensUsed"] = response.usage.tokens_used
        metadata["cost"] = response.usage.estimated_cost
    if response.model:
        metadata["model"] = response.model
    if response.error:
        metadata["error"] = response.error
    await context.chat_logger.log_interaction(
        turn.request_id,
        turn.user_id,
        turn.message,
        response.content if response.success else f"[ERROR: {response.error}]",
        metadata,
    )

    body = response.model_dump(mode="json", by_alias=True, exclude_none=True)
    if not response.success:
        return JSONResponse(status_code=response.status_code or 500, content=body)

    if conversation_id or turn.user_id:
        await context.conversations.save_turn(
            conversation_id,
            turn.user_id,
            turn.message,
            response.content or "",
            assistant_metadata(response.deals, response.coupons),
        )
    return JSONResponse(status_code=status.HTTP_200_OK, content=body)


@router.post(
    "/chat",
    response_model=ChatResponse,
    summary="Chat with the deals assistant",
    description=(
        "Answers a shopping question. Send `Accept: text/event-stream` to receive "
        "the answer as server-sent events instead of a single JSON body."
    ),
)
async def chat(
    request: Request,
    payload: ChatRequest,
    context: AppContext = Depends(get_app_context),
    user_id: Optional[str] = Depends(get_user_id),
    client_ip: Optional[str] = Depends(get_client_ip),
):
    logger.info(f"Chat request: {payload.message[:50]!r} (user: {user_id or 'guest'})")

    history = await _resolve_history(context, payload.history, payload.conversation_id, user_id)
    turn = _build_turn(
        payload.message,
        user_id,
        client_ip,
        history,
        current_page=payload.context.current_page if payload.context else None,
    )

    if _wants_stream(request, context):
        return _streaming_response(context, turn, payload.conversation_id)
    return await _buffered_response(context, turn, payload.conversation_id)


@router.get(
    "/chat",
    summary="Chat over server-sent events",
    description="EventSource-friendly variant of POST /ai/chat; always streams.",
)
async def chat_stream(
    message: str = Query(..., min_length=1),
    conversation_id: Optional[str] = Query(None, alias="conversationId"),
    context: AppContext = Depends(get_app_context),
    user_id: Optional[str] = Depends(get_user_id),
    client_ip: Optional[str] = Depends(get_client_ip),
) -> StreamingResponse:
    history = await _resolve_history(context, None, conversation_id, user_id)
    turn = _build_turn(message, user_id, client_ip, history)
    return _streaming_response(context, turn, conversation_id)


@router.post(
    "/feedback",
    response_model=FeedbackResponse,
    summary="Rate an assistant answer",
)
async def feedback(
    payload: FeedbackRequest,
    context: AppContext = Depends(get_app_context),
) -> FeedbackResponse:
    """Always reports success; feedback is not worth failing a client over."""
    saved = await context.conversations.record_feedback(
        str(payload.message_id), payload.rating, payload.comment
    )
    if not saved:
        logger.warning(f"Feedback for message {payload.message_id} was not stored")
    return FeedbackResponse(success=True)


@router.get("/stats", summary="Cache statistics and effective AI configuration")
async def stats(context: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    settings = context.settings
    return {
        "success": True,
        "cache": context.cache.stats(),
        "config": {
            "models": {
                "simple": settings.llm.simple_model,
                "complex": settings.llm.complex_model,
                "embedding": settings.llm.embedding_model,
            },
            "rateLimits": {
                "guest": {
                    "perMinute": settings.rate_limit.guest_per_minute,
                    "perDay": settings.rate_limit.guest_per_day,
                },
                "authenticated": {
                    "perMinute": settings.rate_limit.user_per_minute,
                    "perDay": settings.rate_limit.user_per_day,
                },
            },
            "features": {
                "enabled": settings.features.enabled,
                "streaming": settings.features.streaming_enabled,
                "caching": settings.features.caching_enabled,
                "logging": settings.features.logging_enabled,
            },
        },
    }


@router.get("/logs", summary="Recent chat log entries, newest first")
async def logs(
    limit: int = Query(50, ge=1, le=500),
    cursor: Optional[str] = Query(None),
    context: AppContext = Depends(get_app_context),
) -> Dict[str, Any]:
    result = await context.chat_logger.get_recent_logs(limit=limit, cursor=cursor)
    return {
        "success": True,
        **result,
        "count": len(result["logs"]),
        "logFile": str(context.chat_logger.path),
    }
