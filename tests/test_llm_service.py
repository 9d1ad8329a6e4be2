"""Unit tests for the LLM gateway."""

import asyncio
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from deals_assistant.services.llm_service import (
    LLMGateway,
    StreamDelta,
    classify_provider_error,
    is_reasoning_model,
)
from deals_assistant.utils.errors import GatewayError, GatewayErrorKind


class ProviderError(Exception):
    """Stand-in for a provider SDK error carrying an HTTP status."""

    def __init__(self, status_code, retry_after=None):
        super().__init__(f"provider returned {status_code}")
        self.status_code = status_code
        headers = {"retry-after": retry_after} if retry_after is not None else {}
        self.response = SimpleNamespace(headers=headers)


def completion_response(content="Hello!", tool_calls=None, model="gpt-4o-mini"):
    return {
        "choices": [
            {
                "message": {"content": content, "tool_calls": tool_calls},
                "finish_reason": "tool_calls" if tool_calls else "stop",
            }
        ],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
        "model": model,
    }


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def gateway(settings, sleep):
    return LLMGateway(settings, sleep=sleep, jitter=lambda low, high: 0.0)


@pytest.fixture
def mock_messages():
    return [{"role": "user", "content": "Hello, how are you?"}]


class TestRequestShaping:
    """Test model-family specific parameters."""

    def test_reasoning_model_detection(self):
        assert is_reasoning_model("gpt-5-nano")
        assert is_reasoning_model("openai/o3-mini")
        assert not is_reasoning_model("gpt-4o-mini")

    def test_reasoning_model_params(self, gateway, mock_messages):
        params = gateway.build_params("gpt-5-nano", mock_messages, max_tokens=200, temperature=0.7)
        assert params["max_completion_tokens"] == 200
        assert "max_tokens" not in params
        assert "temperature" not in params

    def test_standard_model_params(self, gateway, mock_messages):
        params = gateway.build_params("gpt-4o-mini", mock_messages, max_tokens=200, temperature=0.3)
        assert params["max_tokens"] == 200
        assert params["temperature"] == 0.3
        assert "tool_choice" not in params

    def test_tools_enable_auto_choice(self, gateway, mock_messages):
        tools = [{"type": "function", "function": {"name": "search_deals", "parameters": {}}}]
        params = gateway.build_params("gpt-4o-mini", mock_messages, tools=tools)
        assert params["tools"] == tools
        assert params["tool_choice"] == "auto"

    def test_provider_side_retries_disabled(self, gateway, mock_messages):
        params = gateway.build_params("gpt-4o-mini", mock_messages)
        assert params["max_retries"] == 0
        assert params["num_retries"] == 0

    def test_stream_requests_usage(self, gateway, mock_messages):
        assert "stream_options" not in gateway.build_params("gpt-4o-mini", mock_messages)
        params = gateway.build_params("gpt-4o-mini", mock_messages, stream=True)
        assert params["stream_options"] == {"include_usage": True}


class TestErrorClassification:
    """Test provider error mapping."""

    @pytest.mark.parametrize(
        "exc, kind",
        [
            (asyncio.TimeoutError(), GatewayErrorKind.TIMEOUT),
            (ConnectionError("refused"), GatewayErrorKind.NETWORK_ERROR),
            (ProviderError(429), GatewayErrorKind.RATE_LIMIT),
            (ProviderError(401), GatewayErrorKind.AUTH_ERROR),
            (ProviderError(403), GatewayErrorKind.AUTH_ERROR),
            (ProviderError(400), GatewayErrorKind.INVALID_REQUEST),
            (ProviderError(404), GatewayErrorKind.INVALID_REQUEST),
            (ProviderError(502), GatewayErrorKind.MODEL_ERROR),
            (ValueError("odd"), GatewayErrorKind.UNKNOWN_ERROR),
        ],
    )
    def test_kind_mapping(self, exc, kind):
        assert classify_provider_error(exc).kind == kind

    def test_retry_after_header_is_capped(self):
        error = classify_provider_error(ProviderError(429, retry_after="120"))
        assert error.retry_after == 30.0

    def test_fatal_kinds_are_not_retryable(self):
        assert not GatewayError(GatewayErrorKind.AUTH_ERROR).retryable
        assert not GatewayError(GatewayErrorKind.CONFIG_ERROR).retryable
        assert not GatewayError(GatewayErrorKind.INVALID_REQUEST).retryable
        assert GatewayError(GatewayErrorKind.TIMEOUT).retryable


class TestCompletion:
    """Test buffered completions and the retry policy."""

    @pytest.mark.asyncio
    async def test_complete_success(self, gateway, mock_messages):
        tool_calls = [
            {"id": "call_1", "function": {"name": "search_deals", "arguments": '{"query": "tv"}'}}
        ]
        with patch(
            "deals_assistant.services.llm_service.acompletion", new_callable=AsyncMock
        ) as mock_completion:
            mock_completion.return_value = completion_response("", tool_calls=tool_calls)

            result = await gateway.complete("gpt-4o-mini", mock_messages)

        assert result.tool_calls == [
            {
                "id": "call_1",
                "type": "function",
                "function": {"name": "search_deals", "arguments": '{"query": "tv"}'},
            }
        ]
        assert result.usage.total_tokens == 15
        assert result.finish_reason == "tool_calls"
        assert result.cost > 0
        mock_completion.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, gateway, sleep, mock_messages):
        with patch(
            "deals_assistant.services.llm_service.acompletion", new_callable=AsyncMock
        ) as mock_completion:
            mock_completion.side_effect = [
                asyncio.TimeoutError(),
                asyncio.TimeoutError(),
                completion_response("third time lucky"),
            ]

            result = await gateway.complete("gpt-4o-mini", mock_messages)

        assert result.content == "third time lucky"
        assert mock_completion.await_count == 3
        delays = [call.args[0] for call in sleep.await_args_list]
        assert len(delays) == 2
        assert delays[0] < delays[1]

    @pytest.mark.asyncio
    async def test_retry_after_drives_the_delay(self, gateway, sleep, mock_messages):
        with patch(
            "deals_assistant.services.llm_service.acompletion", new_callable=AsyncMock
        ) as mock_completion:
            mock_completion.side_effect = [ProviderError(429, retry_after="3"), completion_response()]

            await gateway.complete("gpt-4o-mini", mock_messages)

        sleep.assert_awaited_once_with(3.0)

    @pytest.mark.asyncio
    async def test_fatal_error_is_not_retried(self, gateway, sleep, mock_messages):
        with patch(
            "deals_assistant.services.llm_service.acompletion", new_callable=AsyncMock
        ) as mock_completion:
            mock_completion.side_effect = ProviderError(401)

            with pytest.raises(GatewayError) as exc_info:
                await gateway.complete("gpt-4o-mini", mock_messages)

        assert exc_info.value.kind == GatewayErrorKind.AUTH_ERROR
        assert mock_completion.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_last_error(self, gateway, sleep, settings, mock_messages):
        with patch(
            "deals_assistant.services.llm_service.acompletion", new_callable=AsyncMock
        ) as mock_completion:
            mock_completion.side_effect = ProviderError(503)

            with pytest.raises(GatewayError) as exc_info:
                await gateway.complete("gpt-4o-mini", mock_messages)

        assert exc_info.value.kind == GatewayErrorKind.MODEL_ERROR
        assert mock_completion.await_count == settings.llm.max_retries
        assert sleep.await_count == settings.llm.max_retries - 1

    @pytest.mark.asyncio
    async def test_missing_key_is_config_error(self, gateway, settings, mock_messages):
        settings.llm.openai_api_key = None
        with patch(
            "deals_assistant.services.llm_service.acompletion", new_callable=AsyncMock
        ) as mock_completion:
            with pytest.raises(GatewayError) as exc_info:
                await gateway.complete("gpt-4o-mini", mock_messages)

        assert exc_info.value.kind == GatewayErrorKind.CONFIG_ERROR
        mock_completion.assert_not_called()


class TestStreaming:
    """Test streamed deltas and tool-call reassembly."""

    @pytest.mark.asyncio
    async def test_stream_forwards_text_and_reassembles_tool_calls(self, gateway, mock_messages):
        async def chunks():
            yield {"choices": [{"delta": {"content": "Hel"}, "finish_reason": None}]}
            yield {"choices": []}
            yield {"choices": [{"delta": {"content": "lo"}, "finish_reason": None}]}
            yield {
                "choices": [
                    {
                        "delta": {
                            "tool_calls": [
                                {
                                    "index": 0,
                                    "id": "call_1",
                                    "function": {"name": "search_deals", "arguments": '{"que'},
                                }
                            ]
                        },
                        "finish_reason": None,
                    }
                ]
            }
            yield {
                "choices": [
                    {
                        "delta": {"tool_calls": [{"index": 0, "function": {"arguments": 'ry": "tv"}'}}]},
                        "finish_reason": "tool_calls",
                    }
                ]
            }

        forwarded = []

        async def on_text(text):
            forwarded.append(text)

        with patch(
            "deals_assistant.services.llm_service.acompletion", new_callable=AsyncMock
        ) as mock_completion:
            mock_completion.return_value = chunks()

            result = await LLMGateway.collect_stream(
                gateway.stream("gpt-4o-mini", mock_messages), on_text
            )

        assert forwarded == ["Hel", "lo"]
        assert result.content == "Hello"
        assert result.finish_reason == "tool_calls"
        assert result.tool_calls == [
            {
                "id": "call_1",
                "type": "function",
                "function": {"name": "search_deals", "arguments": '{"query": "tv"}'},
            }
        ]
        assert mock_completion.call_args.kwargs["stream"] is True

    @pytest.mark.asyncio
    async def test_mid_stream_failure_is_typed(self, gateway, mock_messages):
        async def chunks():
            yield {"choices": [{"delta": {"content": "partial"}, "finish_reason": None}]}
            raise ConnectionError("reset")

        with patch(
            "deals_assistant.services.llm_service.acompletion", new_callable=AsyncMock
        ) as mock_completion:
            mock_completion.return_value = chunks()

            with pytest.raises(GatewayError) as exc_info:
                async for _ in gateway.stream("gpt-4o-mini", mock_messages):
                    pass

        assert exc_info.value.kind == GatewayErrorKind.NETWORK_ERROR

    @pytest.mark.asyncio
    async def test_collect_stream_without_callback(self):
        async def deltas():
            yield StreamDelta(text="a")
            yield StreamDelta(text="b", finish_reason="stop")

        result = await LLMGateway.collect_stream(deltas())
        assert result.content == "ab"
        assert result.tool_calls == []

    @pytest.mark.asyncio
    async def test_usage_chunk_is_collected(self, gateway, mock_messages):
        async def chunks():
            yield {"choices": [{"delta": {"content": "Hi"}, "finish_reason": "stop"}]}
            yield {
                "choices": [],
                "usage": {"prompt_tokens": 30, "completion_tokens": 12, "total_tokens": 42},
            }

        with patch(
            "deals_assistant.services.llm_service.acompletion", new_callable=AsyncMock
        ) as mock_completion:
            mock_completion.return_value = chunks()

            result = await LLMGateway.collect_stream(gateway.stream("gpt-4o-mini", mock_messages))

        assert result.content == "Hi"
        assert result.usage.total_tokens == 42
        assert result.usage.input_tokens == 30


class TestCostAndHealth:
    """Test cost estimation and the health probe."""

    def test_known_model_cost(self, gateway):
        assert gateway.estimate_cost("gpt-4o-mini", 1_000_000, 1_000_000) == pytest.approx(0.75)

    def test_provider_prefix_is_ignored(self, gateway):
        assert gateway.estimate_cost("openai/gpt-4o", 1_000_000, 0) == pytest.approx(2.5)

    def test_unknown_model_uses_simple_model_rate(self, gateway):
        assert gateway.estimate_cost("mystery-model", 1_000_000, 1_000_000) == pytest.approx(0.45)

    @pytest.mark.asyncio
    async def test_health_check_success(self, gateway, settings):
        with patch(
            "deals_assistant.services.llm_service.acompletion", new_callable=AsyncMock
        ) as mock_completion:
            mock_completion.return_value = completion_response("pong")
            health = await gateway.health_check()

        assert health["healthy"] is True
        assert health["model"] == settings.llm.simple_model
        assert "latencyMs" in health
        assert mock_completion.call_args.kwargs["max_completion_tokens"] == 5

    @pytest.mark.asyncio
    async def test_health_check_failure(self, gateway, sleep):
        with patch(
            "deals_assistant.services.llm_service.acompletion", new_callable=AsyncMock
        ) as mock_completion:
            mock_completion.side_effect = ProviderError(503)
            health = await gateway.health_check()

        assert health["healthy"] is False
        assert health["code"] == "MODEL_ERROR"
        assert health["retryable"] is True
        assert mock_completion.await_count == 1
        sleep.assert_not_awaited()


@pytest.fixture
def unavailable_provider(monkeypatch):
    """Local OpenAI-compatible endpoint that answers every request with 503."""

    class Handler(BaseHTTPRequestHandler):
        requests = 0

        def do_POST(self):
            type(self).requests += 1
            self.rfile.read(int(self.headers.get("content-length") or 0))
            body = b'{"error": {"message": "overloaded", "type": "server_error"}}'
            self.send_response(503)
            self.send_header("content-type", "application/json")
            self.send_header("content-length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    base_url = f"http://127.0.0.1:{server.server_port}/v1"
    monkeypatch.setenv("OPENAI_API_BASE", base_url)
    monkeypatch.setenv("OPENAI_BASE_URL", base_url)
    try:
        yield Handler
    finally:
        server.shutdown()
        server.server_close()


class TestProviderRequestBudget:
    """Test that only the gateway retries, against a real HTTP endpoint."""

    @pytest.mark.asyncio
    async def test_one_http_request_per_attempt(
        self, settings, sleep, mock_messages, unavailable_provider
    ):
        settings.llm.request_timeout = 5.0
        gateway = LLMGateway(settings, sleep=sleep, jitter=lambda low, high: 0.0)

        with pytest.raises(GatewayError) as exc_info:
            await gateway.complete("gpt-4o-mini", mock_messages)

        assert exc_info.value.kind == GatewayErrorKind.MODEL_ERROR
        assert unavailable_provider.requests == settings.llm.max_retries
