"""Chat API models for the deals assistant."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from deals_assistant.models.classification import Intent


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HistoryMessage(_CamelModel):
    """One prior conversation turn."""

    role: Literal["user", "assistant", "system"]
    content: str = Field(default="", max_length=10000)
    deals: Optional[List[Dict[str, Any]]] = Field(
        default=None, description="Deals attached to an assistant turn"
    )


class ChatContext(_CamelModel):
    current_page: Optional[str] = Field(default=None, max_length=200)
    viewed_deals: List[str] = Field(default_factory=list, max_length=20)


class ChatRequest(_CamelModel):
    """Request body for the chat endpoint."""

    message: str = Field(..., min_length=1, description="User message; length limit enforced per turn")
    history: Optional[List[HistoryMessage]] = Field(
        default=None, max_length=20, description="Client-held conversation history"
    )
    conversation_id: Optional[str] = Field(default=None, description="Stored conversation id")
    context: Optional[ChatContext] = None


class ChatTurn(BaseModel):
    """Input to one orchestrator invocation."""

    model_config = ConfigDict(frozen=True)

    message: str
    user_id: Optional[str] = None
    ip: Optional[str] = None
    history: List[HistoryMessage] = Field(default_factory=list)
    current_page: Optional[str] = None
    request_id: Optional[str] = None

    @property
    def user_key(self) -> str:
        """Rate-limit identity: authenticated users by id, guests by IP."""
        if self.user_id:
            return f"u:{self.user_id}"
        return f"ip:{self.ip or 'unknown'}"

    @property
    def is_guest(self) -> bool:
        return not self.user_id


class Usage(_CamelModel):
    tokens_used: int = 0
    estimated_cost: float = 0.0


class ChatResponse(_CamelModel):
    """Buffered chat turn response."""

    success: bool
    content: Optional[str] = None
    intent: Optional[Intent] = None
    request_id: str
    latency_ms: int = 0
    cached: bool = False
    usage: Optional[Usage] = None
    deals: Optional[List[Dict[str, Any]]] = None
    coupons: Optional[List[Dict[str, Any]]] = None
    store: Optional[Dict[str, Any]] = None
    deal_ids: Optional[List[Any]] = None
    model: Optional[str] = None
    fallback: Optional[bool] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    retryable: Optional[bool] = None
    retry_after: Optional[int] = None


StreamEventType = Literal[
    "start", "text", "thinking", "tool_call", "deals", "coupons", "dealIds", "done", "error"
]


class StreamEvent(_CamelModel):
    """One server-sent event of a streaming turn."""

    type: StreamEventType
    request_id: Optional[str] = None
    content: Optional[str] = None
    deals: Optional[List[Dict[str, Any]]] = None
    coupons: Optional[List[Dict[str, Any]]] = None
    deal_ids: Optional[List[Any]] = None
    cached: Optional[bool] = None
    tokens_used: Optional[int] = None
    error: Optional[str] = None
    retry_after: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StreamOutcome(BaseModel):
    """What a streaming turn produced, for persistence by the caller."""

    request_id: str
    success: bool = True
    content: str = ""
    intent: Optional[Intent] = None
    cached: bool = False
    deals: List[Dict[str, Any]] = Field(default_factory=list)
    coupons: List[Dict[str, Any]] = Field(default_factory=list)
    deal_ids: List[Any] = Field(default_factory=list)
    tokens_used: int = 0
    cost: float = 0.0
    model: Optional[str] = None
    error: Optional[str] = None


class FeedbackRequest(_CamelModel):
    message_id: UUID = Field(..., description="Assistant message id")
    rating: Literal["positive", "negative"]
    comment: Optional[str] = Field(default=None, max_length=500)


class FeedbackResponse(BaseModel):
    success: bool = True
