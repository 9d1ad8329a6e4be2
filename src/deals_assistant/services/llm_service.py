"""LLM gateway built on LiteLLM.

Wraps the model provider behind one ``complete``/``stream`` surface and owns:
- model-family request shaping (token-limit parameter name, temperature support)
- retry with exponential backoff and jitter, honoring provider retry-after hints
- mapping provider failures onto the closed ``GatewayErrorKind`` taxonomy
- streaming delta iteration with tool-call fragment reassembly
- cost estimation from the configured rate table
"""

import asyncio
import os
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx
from litellm import acompletion
from litellm.exceptions import APIConnectionError, Timeout as LiteLLMTimeout
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from deals_assistant.config import ModelRate, Settings, get_settings
from deals_assistant.utils.errors import GatewayError, GatewayErrorKind
from deals_assistant.utils.logging import get_logger

logger = get_logger("llm_service")

MAX_RETRY_AFTER_SECONDS = 30.0
MAX_BACKOFF_SECONDS = 10.0
BASE_BACKOFF_SECONDS = 1.0
MAX_JITTER_SECONDS = 0.5
MODEL_ERROR_RETRY_AFTER = 5.0

# Families that reject a custom temperature and take ``max_completion_tokens``.
REASONING_MODEL_PREFIXES = ("gpt-5", "o1", "o3", "o4")


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


@dataclass
class Completion:
    """A buffered model response."""

    content: str
    tool_calls: List[Dict[str, Any]]
    finish_reason: Optional[str]
    usage: TokenUsage
    cost: float
    latency_ms: int
    model: str


@dataclass
class StreamDelta:
    """One streamed chunk: a text fragment, tool-call fragments, or the closing usage report."""

    text: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Optional[TokenUsage] = None


@dataclass
class StreamResult:
    content: str
    tool_calls: List[Dict[str, Any]]
    finish_reason: Optional[str]
    latency_ms: int
    usage: TokenUsage = field(default_factory=TokenUsage)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a LiteLLM response object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def bare_model_name(model: str) -> str:
    """``openai/gpt-4o-mini`` -> ``gpt-4o-mini``."""
    return model.split("/", 1)[1] if "/" in model else model


def is_reasoning_model(model: str) -> bool:
    return bare_model_name(model).startswith(REASONING_MODEL_PREFIXES)


def _retry_after_hint(exc: Exception) -> Optional[float]:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None) or getattr(exc, "headers", None) or {}
    value = headers.get("retry-after") if hasattr(headers, "get") else None
    if value is None:
        return None
    try:
        return min(float(value), MAX_RETRY_AFTER_SECONDS)
    except (TypeError, ValueError):
        return None


def classify_provider_error(exc: Exception, model: Optional[str] = None) -> GatewayError:
    """Map any provider/transport exception onto a ``GatewayError``."""
    if isinstance(exc, GatewayError):
        return exc

    details = {"provider_error": type(exc).__name__}

    if isinstance(exc, (LiteLLMTimeout, asyncio.TimeoutError, httpx.TimeoutException)):
        return GatewayError(
            GatewayErrorKind.TIMEOUT, "Request timed out.", model=model, details=details
        )
    if isinstance(exc, (APIConnectionError, httpx.ConnectError, ConnectionError)):
        return GatewayError(
            GatewayErrorKind.NETWORK_ERROR,
            "Could not connect to AI service.",
            model=model,
            details=details,
        )

    status = getattr(exc, "status_code", None)
    if status == 429:
        return GatewayError(
            GatewayErrorKind.RATE_LIMIT,
            "Rate limit exceeded. Please try again later.",
            retry_after=_retry_after_hint(exc),
            model=model,
            details=details,
        )
    if status in (401, 403):
        return GatewayError(
            GatewayErrorKind.AUTH_ERROR, "AI service authentication failed.", model=model, details=details
        )
    if status in (400, 404, 422):
        return GatewayError(
            GatewayErrorKind.INVALID_REQUEST, str(exc), model=model, details=details
        )
    if isinstance(status, int) and status >= 500:
        return GatewayError(
            GatewayErrorKind.MODEL_ERROR,
            "AI service is temporarily unavailable.",
            retry_after=MODEL_ERROR_RETRY_AFTER,
            model=model,
            details=details,
        )
    return GatewayError(
        GatewayErrorKind.UNKNOWN_ERROR,
        "An unexpected error occurred.",
        model=model,
        details=details,
    )


def _token_usage(raw: Any) -> TokenUsage:
    return TokenUsage(
        input_tokens=_get(raw, "prompt_tokens", 0) or 0,
        output_tokens=_get(raw, "completion_tokens", 0) or 0,
        total_tokens=_get(raw, "total_tokens", 0) or 0,
    )


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, GatewayError) and exc.retryable


def _tool_call_to_dict(call: Any) -> Dict[str, Any]:
    function = _get(call, "function")
    return {
        "id": _get(call, "id"),
        "type": "function",
        "function": {
            "name": _get(function, "name"),
            "arguments": _get(function, "arguments") or "{}",
        },
    }


class StreamAccumulator:
    """Collects streamed deltas into final text and reassembled tool calls.

    Tool calls arrive as fragments keyed by ``index``; the id comes once and
    the name and argument strings are concatenations across fragments.
    """

    def __init__(self):
        self._started = time.monotonic()
        self._text: List[str] = []
        self._calls: Dict[int, Dict[str, Any]] = {}
        self.finish_reason: Optional[str] = None
        self.usage = TokenUsage()

    def add(self, delta: StreamDelta) -> None:
        if delta.text:
            self._text.append(delta.text)
        for fragment in delta.tool_calls:
            index = _get(fragment, "index", 0) or 0
            slot = self._calls.setdefault(
                index,
                {"id": None, "type": "function", "function": {"name": "", "arguments": ""}},
            )
            if _get(fragment, "id"):
                slot["id"] = _get(fragment, "id")
            function = _get(fragment, "function")
            if _get(function, "name"):
                slot["function"]["name"] += _get(function, "name")
            if _get(function, "arguments"):
                slot["function"]["arguments"] += _get(function, "arguments")
        if delta.usage is not None:
            self.usage = delta.usage
        if delta.finish_reason:
            self.finish_reason = delta.finish_reason

    def result(self) -> StreamResult:
        return StreamResult(
            content="".join(self._text),
            tool_calls=[self._calls[index] for index in sorted(self._calls)],
            finish_reason=self.finish_reason,
            latency_ms=int((time.monotonic() - self._started) * 1000),
            usage=self.usage,
        )


class LLMGateway:
    """Model-agnostic completion gateway with retry and typed errors."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ):
        self.settings = settings or get_settings()
        self._sleep = sleep
        self._jitter = jitter
        self._configure_litellm_environment()

    def _configure_litellm_environment(self) -> None:
        """LiteLLM reads provider credentials from the environment."""
        if self.settings.llm.openai_api_key:
            os.environ["OPENAI_API_KEY"] = self.settings.llm.openai_api_key
        if self.settings.llm.openai_organization:
            os.environ["OPENAI_ORGANIZATION"] = self.settings.llm.openai_organization
        if self.settings.llm.anthropic_api_key:
            os.environ["ANTHROPIC_API_KEY"] = self.settings.llm.anthropic_api_key
        logger.debug("LiteLLM environment variables configured")

    def _validate_model_configuration(self, model: str) -> None:
        if model.startswith("anthropic/") or bare_model_name(model).startswith("claude"):
            if not self.settings.llm.has_anthropic:
                raise GatewayError(
                    GatewayErrorKind.CONFIG_ERROR,
                    "AI service not configured.",
                    model=model,
                    details={"required": ["ANTHROPIC_API_KEY"]},
                )
        elif "/" not in model or model.startswith("openai/"):
            if not self.settings.llm.has_openai:
                raise GatewayError(
                    GatewayErrorKind.CONFIG_ERROR,
                    "AI service not configured.",
                    model=model,
                    details={"required": ["OPENAI_API_KEY"]},
                )

    def build_params(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: int = 1500,
        temperature: float = 0.7,
        stream: bool = False,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": stream,
            "timeout": self.settings.llm.request_timeout,
            # Attempts are counted by _call_with_retry only
            "max_retries": 0,
            "num_retries": 0,
        }
        if is_reasoning_model(model):
            params["max_completion_tokens"] = max_tokens
        else:
            params["max_tokens"] = max_tokens
            params["temperature"] = temperature
        if stream:
            params["stream_options"] = {"include_usage": True}
        if tools:
            params["tools"] = tools
            params["tool_choice"] = "auto"
        return params

    def _backoff(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after:
            return min(float(retry_after), MAX_RETRY_AFTER_SECONDS)
        attempt = retry_state.attempt_number - 1
        delay = BASE_BACKOFF_SECONDS * (2 ** attempt) + self._jitter(0, MAX_JITTER_SECONDS)
        return min(delay, MAX_BACKOFF_SECONDS)

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        sleep_for = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"LLM call failed (attempt {retry_state.attempt_number}), retrying in {sleep_for:.2f}s: {exc}",
            extra={
                "extra_fields": {
                    "attempt": retry_state.attempt_number,
                    "error_kind": getattr(getattr(exc, "kind", None), "value", None),
                }
            },
        )

    async def _invoke(self, params: Dict[str, Any]) -> Any:
        try:
            return await acompletion(**params)
        except Exception as e:
            raise classify_provider_error(e, params.get("model")) from e

    async def _call_with_retry(self, params: Dict[str, Any]) -> Any:
        self._validate_model_configuration(params["model"])
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.llm.max_retries),
            retry=retry_if_exception(_is_retryable),
            wait=self._backoff,
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        response = None
        async for attempt in retrying:
            with attempt:
                response = await self._invoke(params)
        return response

    async def complete(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: int = 1500,
        temperature: float = 0.7,
    ) -> Completion:
        """Buffered completion.

        Raises:
            GatewayError: after retries are exhausted or on a fatal error.
        """
        started = time.monotonic()
        params = self.build_params(model, messages, tools, max_tokens, temperature)
        logger.debug(f"Calling LLM model: {model}, tools={bool(tools)}")
        response = await self._call_with_retry(params)

        choices = _get(response, "choices") or []
        choice = choices[0] if choices else None
        message = _get(choice, "message")
        usage = _token_usage(_get(response, "usage"))
        return Completion(
            content=_get(message, "content") or "",
            tool_calls=[_tool_call_to_dict(call) for call in (_get(message, "tool_calls") or [])],
            finish_reason=_get(choice, "finish_reason"),
            usage=usage,
            cost=self.estimate_cost(model, usage.input_tokens, usage.output_tokens),
            latency_ms=int((time.monotonic() - started) * 1000),
            model=_get(response, "model") or model,
        )

    async def stream(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: int = 1500,
        temperature: float = 0.7,
    ) -> AsyncIterator[StreamDelta]:
        """Yield deltas as they arrive. Opening the stream is retried; a mid-stream failure is not."""
        params = self.build_params(model, messages, tools, max_tokens, temperature, stream=True)
        logger.debug(f"Streaming LLM model: {model}, tools={bool(tools)}")
        response = await self._call_with_retry(params)
        try:
            async for chunk in response:
                # With include_usage the last chunk has no choices, only usage
                raw_usage = _get(chunk, "usage")
                if raw_usage:
                    yield StreamDelta(usage=_token_usage(raw_usage))
                choices = _get(chunk, "choices") or []
                if not choices:
                    continue
                choice = choices[0]
                delta = _get(choice, "delta")
                yield StreamDelta(
                    text=_get(delta, "content") or "",
                    tool_calls=list(_get(delta, "tool_calls") or []),
                    finish_reason=_get(choice, "finish_reason"),
                )
        except GatewayError:
            raise
        except Exception as e:
            raise classify_provider_error(e, model) from e

    @staticmethod
    async def collect_stream(
        deltas: AsyncIterator[StreamDelta],
        on_text: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> StreamResult:
        """Drain ``deltas``, forwarding each text fragment to ``on_text`` as it arrives."""
        accumulator = StreamAccumulator()
        async for delta in deltas:
            accumulator.add(delta)
            if delta.text and on_text is not None:
                await on_text(delta.text)
        return accumulator.result()

    def _rate_for(self, model: str) -> ModelRate:
        rates = self.settings.llm.token_costs
        name = bare_model_name(model)
        if name in rates:
            return rates[name]
        fallback = bare_model_name(self.settings.llm.simple_model)
        if fallback in rates:
            return rates[fallback]
        return min(rates.values(), key=lambda rate: rate.input + rate.output)

    def estimate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        rate = self._rate_for(model)
        return (input_tokens / 1_000_000) * rate.input + (output_tokens / 1_000_000) * rate.output

    async def health_check(self) -> Dict[str, Any]:
        """Single trivial completion against the simple model, no retries."""
        model = self.settings.llm.simple_model
        started = time.monotonic()
        try:
            self._validate_model_configuration(model)
            params = self.build_params(
                model, [{"role": "user", "content": "ping"}], max_tokens=5
            )
            await self._invoke(params)
            return {
                "healthy": True,
                "model": model,
                "latencyMs": int((time.monotonic() - started) * 1000),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        except GatewayError as e:
            logger.warning(f"LLM health check failed: {e.message}")
            return {
                "healthy": False,
                "error": e.message,
                "code": e.kind.value,
                "retryable": e.retryable,
                "latencyMs": int((time.monotonic() - started) * 1000),
            }
