"""Pytest configuration and shared fixtures for deals assistant tests."""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from deals_assistant.clients.supabase_client import SupabaseClient
from deals_assistant.config import Settings
from deals_assistant.services.llm_service import Completion, TokenUsage

FIXED_NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def isolated_environ():
    """The gateway exports provider keys for LiteLLM; keep them out of other tests."""
    with patch.dict(os.environ):
        yield


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with a provider key, generous limits and a throwaway chat log."""
    settings = Settings()
    settings.llm.openai_api_key = "sk-test"
    settings.llm.anthropic_api_key = None
    settings.redis.url = None
    settings.features.enabled = True
    settings.features.caching_enabled = True
    settings.features.streaming_enabled = True
    settings.features.logging_enabled = True
    settings.rate_limit.guest_per_minute = 10
    settings.rate_limit.guest_per_day = 1000
    settings.rate_limit.user_per_minute = 30
    settings.rate_limit.user_per_day = 1000
    settings.rate_limit.count_completed_turns = False
    settings.chat_log.log_file = str(tmp_path / "ai-chat.log")
    return settings


@pytest.fixture
def mock_supabase() -> MagicMock:
    db = MagicMock(spec=SupabaseClient)
    db.select = AsyncMock(return_value=[])
    db.count = AsyncMock(return_value=0)
    db.insert = AsyncMock(return_value=None)
    db.update = AsyncMock(return_value=[])
    db.delete = AsyncMock(return_value=0)
    db.aclose = AsyncMock()
    return db


def make_completion(
    content: str = "",
    tool_calls: Optional[List[Dict[str, Any]]] = None,
    total_tokens: int = 30,
    model: str = "gpt-5-nano",
) -> Completion:
    return Completion(
        content=content,
        tool_calls=tool_calls or [],
        finish_reason="tool_calls" if tool_calls else "stop",
        usage=TokenUsage(input_tokens=20, output_tokens=total_tokens - 20, total_tokens=total_tokens),
        cost=0.0001,
        latency_ms=5,
        model=model,
    )


def make_tool_call(call_id: str, name: str, arguments: str) -> Dict[str, Any]:
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": arguments},
    }


def deal_row(deal_id: Any, price: float, original_price: Optional[float] = None, **extra: Any) -> Dict[str, Any]:
    row = {
        "id": deal_id,
        "title": f"Deal {deal_id}",
        "price": price,
        "original_price": original_price,
        "merchant": "Best Buy",
        "votes_up": 0,
        "votes_down": 0,
        "comment_count": 0,
        "status": "approved",
    }
    row.update(extra)
    return row
