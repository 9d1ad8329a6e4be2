"""Chat orchestration: the per-turn state machine behind both chat endpoints.

A turn moves through validation, rate limiting, the exact-match cache,
classification, model routing, an optional tool round and persistence of
the result to the cache. Gateway failures become one of a few user-safe
messages; anything else unexpected falls back to a plain popular-deals
search.
"""

from __future__ import annotations

import math
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from deals_assistant.config import Settings, get_settings
from deals_assistant.models.chat import ChatResponse, ChatTurn, StreamEvent, StreamOutcome, Usage
from deals_assistant.models.classification import ClassificationResult, Intent
from deals_assistant.models.tools import (
    CompareResult,
    CouponsResult,
    DealDetailResult,
    SearchDealsResult,
    StoreInfoResult,
    ToolResult,
    TrendingResult,
)
from deals_assistant.services.cache_service import CacheService
from deals_assistant.services.classifier_service import IntentClassifier, extract_json_object
from deals_assistant.services.llm_service import LLMGateway
from deals_assistant.services.prompt_service import (
    ERROR_RESPONSES,
    PromptBuilder,
    format_deals_for_context,
)
from deals_assistant.services.tool_service import ToolService
from deals_assistant.utils.errors import (
    ClassificationError,
    GatewayError,
    GatewayErrorKind,
    OrchestratorException,
)
from deals_assistant.utils.logging import get_logger

logger = get_logger("orchestrator_service")

EventCallback = Callable[[StreamEvent], Awaitable[None]]

GENERIC_ERROR = "Something went wrong. Please try again."

USER_SAFE_ERRORS: Dict[GatewayErrorKind, Tuple[str, int]] = {
    GatewayErrorKind.RATE_LIMIT: ("AI is busy right now. Please wait a moment and try again.", 429),
    GatewayErrorKind.TIMEOUT: ("Request took too long. Please try again.", 504),
    GatewayErrorKind.AUTH_ERROR: ("AI service is temporarily unavailable.", 503),
    GatewayErrorKind.CONFIG_ERROR: ("AI service is temporarily unavailable.", 503),
    GatewayErrorKind.INVALID_REQUEST: ("Invalid request. Please try rephrasing your question.", 400),
    GatewayErrorKind.MODEL_ERROR: ("AI service hiccup. Please try again in a moment.", 503),
    GatewayErrorKind.NETWORK_ERROR: ("AI service hiccup. Please try again in a moment.", 503),
    GatewayErrorKind.UNKNOWN_ERROR: (GENERIC_ERROR, 500),
}

# Intents whose answers depend on fresh data-store results.
TOOL_INTENTS = frozenset({Intent.SEARCH, Intent.COUPON, Intent.TRENDING})

DEALS_FOUND_HEADER = "\n\nDEALS FOUND:\n"

_DEAL_LIST_RESULTS = (SearchDealsResult, TrendingResult, CompareResult)


def user_safe_error(error: GatewayError) -> Tuple[str, int]:
    return USER_SAFE_ERRORS[error.kind]


def parse_structured_reply(text: str) -> Tuple[str, List[Any]]:
    """Split a ``{"message": ..., "dealIds": [...]}`` reply into (message, deal ids).

    Anything that is not that shape is returned as plain text with no ids.
    """
    if not text or "{" not in text:
        return text or "", []
    try:
        parsed = extract_json_object(text)
    except ClassificationError:
        return text, []
    message = parsed.get("message")
    if not isinstance(message, str) or not message:
        return text, []
    deal_ids = parsed.get("dealIds")
    return message, list(deal_ids) if isinstance(deal_ids, list) else []


def collect_deals(results: Dict[str, ToolResult]) -> List[Dict[str, Any]]:
    """Every deal any tool found, first occurrence of each id kept."""
    deals: List[Dict[str, Any]] = []
    seen = set()
    for result in results.values():
        if isinstance(result, _DEAL_LIST_RESULTS):
            found = result.deals
        elif isinstance(result, DealDetailResult) and result.deal is not None:
            found = [result.deal]
        else:
            continue
        for deal in found:
            key = str(deal.id)
            if key not in seen:
                seen.add(key)
                deals.append(deal.model_dump(mode="json"))
    return deals


def collect_coupons(results: Dict[str, ToolResult]) -> List[Dict[str, Any]]:
    coupons: List[Dict[str, Any]] = []
    for result in results.values():
        if isinstance(result, CouponsResult):
            coupons.extend(coupon.model_dump(mode="json") for coupon in result.coupons)
    return coupons


def collect_store(results: Dict[str, ToolResult]) -> Optional[Dict[str, Any]]:
    store = None
    for result in results.values():
        if isinstance(result, StoreInfoResult) and result.store is not None:
            store = result.store.model_dump(mode="json")
    return store


def reconcile_deals(found: List[Dict[str, Any]], claimed_ids: List[Any]) -> List[Dict[str, Any]]:
    """Deals to show, given what the tools found and the ids the model named.

    The model's ids narrow the set only when at least one of them is real;
    missing or made-up ids never hide found deals.
    """
    if not found:
        return []
    if claimed_ids:
        wanted = {str(deal_id) for deal_id in claimed_ids}
        selected = [deal for deal in found if str(deal.get("id")) in wanted]
        if selected:
            return selected
        logger.info(f"Model named no known deal ids, showing all {len(found)} found deals")
    return list(found)


class ChatOrchestrator:
    """Runs one chat turn, buffered (``chat``) or as an event stream (``chat_stream``)."""

    def __init__(
        self,
        cache: CacheService,
        gateway: LLMGateway,
        classifier: IntentClassifier,
        tools: ToolService,
        settings: Optional[Settings] = None,
        prompts: Optional[PromptBuilder] = None,
    ):
        self.settings = settings or get_settings()
        self.cache = cache
        self.gateway = gateway
        self.classifier = classifier
        self.tools = tools
        self.prompts = prompts or PromptBuilder(
            max_history=self.settings.limits.max_conversation_history
        )

    @property
    def enabled(self) -> bool:
        return self.settings.ai_available

    def _validate(self, message: Optional[str]) -> Optional[Tuple[str, int]]:
        if not self.enabled:
            return ERROR_RESPONSES["disabled"], 503
        if not message or not isinstance(message, str) or not message.strip():
            return ERROR_RESPONSES["invalid_input"], 400
        if len(message.strip()) > self.settings.limits.max_input_length:
            return ERROR_RESPONSES["too_long"], 400
        return None

    async def _count_completed_turn(self, user_key: str) -> None:
        if self.settings.rate_limit.count_completed_turns:
            await self.cache.increment_rate_limits(user_key)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    def _error_response(
        self,
        message: str,
        request_id: str,
        started: float,
        status_code: int = 500,
        retryable: Optional[bool] = None,
        retry_after: Optional[float] = None,
    ) -> ChatResponse:
        return ChatResponse(
            success=False,
            error=message,
            request_id=request_id,
            latency_ms=self._elapsed_ms(started),
            status_code=status_code,
            retryable=retryable,
            retry_after=math.ceil(retry_after) if retry_after else None,
        )

    async def _cache_response(self, message: str, response: ChatResponse) -> None:
        payload = response.model_dump(
            mode="json", exclude={"request_id", "latency_ms", "cached"}
        )
        await self.cache.set_response(message, payload)

    # ------------------------------------------------------------------
    # Buffered turn
    # ------------------------------------------------------------------

    async def chat(self, turn: ChatTurn) -> ChatResponse:
        started = time.monotonic()
        request_id = turn.request_id or str(uuid.uuid4())

        invalid = self._validate(turn.message)
        if invalid:
            return self._error_response(invalid[0], request_id, started, status_code=invalid[1])
        message = turn.message.strip()

        decision = await self.cache.check_rate_limit(turn.user_key)
        if decision.limited:
            return self._error_response(
                decision.message, request_id, started, status_code=429, retry_after=decision.retry_after
            )

        try:
            cached = await self.cache.get_response(message)
            if cached:
                logger.info(f"Cache hit: {message[:50]!r}")
                payload = dict(cached)
                payload.update(
                    request_id=request_id, cached=True, latency_ms=self._elapsed_ms(started)
                )
                return ChatResponse.model_validate(payload)

            classification = await self.classifier.classify(message)
            logger.info(
                f"Intent: {classification.intent.value} ({classification.complexity.value})",
                extra={"extra_fields": {"confidence": classification.confidence}},
            )

            if classification.faq_response:
                response = ChatResponse(
                    success=True,
                    content=classification.faq_response,
                    intent=classification.intent,
                    request_id=request_id,
                    latency_ms=self._elapsed_ms(started),
                    usage=Usage(tokens_used=0, estimated_cost=0.0),
                )
                await self._cache_response(message, response)
                return response

            response = await self._answer(message, turn, classification, request_id, started)
            await self._cache_response(message, response)
            await self._count_completed_turn(turn.user_key)
            return response

        except GatewayError as e:
            logger.error(f"Chat failed with gateway error {e.kind.value}: {e.message}")
            safe_message, status = user_safe_error(e)
            return self._error_response(
                safe_message,
                request_id,
                started,
                status_code=status,
                retryable=e.retryable,
                retry_after=e.retry_after,
            )
        except Exception as e:
            logger.error(f"Chat failed, attempting fallback: {e}", exc_info=True)
            return await self._fallback(message, request_id, started)

    async def _answer(
        self,
        message: str,
        turn: ChatTurn,
        classification: ClassificationResult,
        request_id: str,
        started: float,
    ) -> ChatResponse:
        limits = self.settings.limits
        model = self.classifier.select_model(classification)
        messages = self.prompts.build_messages(message, classification.intent, turn.history)

        first = await self.gateway.complete(
            model,
            messages,
            tools=self.tools.get_tool_definitions(),
            max_tokens=limits.max_tokens_simple,
            temperature=0.7,
        )
        tokens = first.usage.total_tokens
        cost = first.cost
        raw_content = first.content
        results: Dict[str, ToolResult] = {}

        if first.tool_calls:
            logger.info(f"Executing {len(first.tool_calls)} tool(s)")
            results = await self.tools.execute_tool_calls(first.tool_calls)
            followup = messages + PromptBuilder.build_tool_messages(first.tool_calls, results)
            final = await self.gateway.complete(
                model, followup, max_tokens=limits.max_tokens_complex, temperature=0.7
            )
            raw_content = final.content
            tokens += final.usage.total_tokens
            cost += final.cost

        content, deal_ids = parse_structured_reply(raw_content)
        deals = reconcile_deals(collect_deals(results), deal_ids)
        coupons = collect_coupons(results)

        return ChatResponse(
            success=True,
            content=content,
            intent=classification.intent,
            request_id=request_id,
            latency_ms=self._elapsed_ms(started),
            usage=Usage(tokens_used=tokens, estimated_cost=cost),
            deals=deals or None,
            coupons=coupons or None,
            store=collect_store(results),
            deal_ids=deal_ids or None,
            model=model,
        )

    async def _fallback(self, message: str, request_id: str, started: float) -> ChatResponse:
        """Popular-deals search when the normal pipeline blew up."""
        try:
            classification = await self.classifier.classify(message)
            query = classification.entities.query or message
            result = await self.tools.execute_tool(
                "search_deals", {"query": query, "sort_by": "popular"}
            )
            if isinstance(result, SearchDealsResult) and result.success and result.deals:
                return ChatResponse(
                    success=True,
                    content=ERROR_RESPONSES["api_error"],
                    intent=Intent.SEARCH,
                    request_id=request_id,
                    latency_ms=self._elapsed_ms(started),
                    deals=[deal.model_dump(mode="json") for deal in result.deals],
                    fallback=True,
                )
        except OrchestratorException as e:
            logger.error(f"Fallback search failed: {e.message}")
        return self._error_response(ERROR_RESPONSES["api_error"], request_id, started)

    # ------------------------------------------------------------------
    # Streaming turn
    # ------------------------------------------------------------------

    async def chat_stream(self, turn: ChatTurn, on_event: EventCallback) -> StreamOutcome:
        """
        Run a turn, reporting progress through ``on_event``.

        A failed precheck emits exactly one ``error`` event. Otherwise ``start``
        comes first and ``done`` or ``error`` comes last.

        Returns:
            What was shown, for persistence by the caller
        """
        request_id = turn.request_id or str(uuid.uuid4())

        invalid = self._validate(turn.message)
        if invalid:
            await on_event(StreamEvent(type="error", error=invalid[0]))
            return StreamOutcome(request_id=request_id, success=False, error=invalid[0])
        message = turn.message.strip()

        decision = await self.cache.check_rate_limit(turn.user_key)
        if decision.limited:
            await on_event(
                StreamEvent(type="error", error=decision.message, retry_after=decision.retry_after)
            )
            return StreamOutcome(request_id=request_id, success=False, error=decision.message)

        await on_event(StreamEvent(type="start", request_id=request_id))

        try:
            cached = await self.cache.get_response(message)
            if cached:
                logger.info(f"Cache hit (stream): {message[:30]!r}")
                return await self._replay_cached(request_id, cached, on_event)

            classification = await self.classifier.classify(message)
            logger.info(f"Intent: {classification.intent.value}")

            if classification.faq_response:
                await on_event(StreamEvent(type="text", content=classification.faq_response))
                await on_event(StreamEvent(type="done", cached=False, tokens_used=0))
                return StreamOutcome(
                    request_id=request_id,
                    content=classification.faq_response,
                    intent=classification.intent,
                )

            model = self.classifier.select_model(classification)
            messages = self.prompts.build_messages(message, classification.intent, turn.history)

            if classification.intent not in TOOL_INTENTS:
                outcome = await self._stream_direct(request_id, classification, model, messages, on_event)
            else:
                outcome = await self._stream_with_tools(
                    request_id, classification, model, messages, on_event
                )
            await self._count_completed_turn(turn.user_key)
            return outcome

        except GatewayError as e:
            logger.error(f"Stream failed with gateway error {e.kind.value}: {e.message}")
            safe_message, _ = user_safe_error(e)
            await on_event(
                StreamEvent(
                    type="error",
                    error=safe_message,
                    retry_after=math.ceil(e.retry_after) if e.retry_after else None,
                )
            )
            return StreamOutcome(request_id=request_id, success=False, error=safe_message)
        except Exception as e:
            logger.error(f"Stream failed: {e}", exc_info=True)
            await on_event(StreamEvent(type="error", error=GENERIC_ERROR))
            return StreamOutcome(request_id=request_id, success=False, error=GENERIC_ERROR)

    async def _replay_cached(
        self, request_id: str, cached: Dict[str, Any], on_event: EventCallback
    ) -> StreamOutcome:
        content = cached.get("content") or ""
        deals = cached.get("deals") or []
        coupons = cached.get("coupons") or []
        await on_event(StreamEvent(type="text", content=content))
        if deals:
            await on_event(StreamEvent(type="deals", deals=deals))
        if coupons:
            await on_event(StreamEvent(type="coupons", coupons=coupons))
        await on_event(StreamEvent(type="done", cached=True))
        return StreamOutcome(
            request_id=request_id,
            content=content,
            intent=cached.get("intent"),
            cached=True,
            deals=deals,
            coupons=coupons,
            deal_ids=cached.get("deal_ids") or [],
        )

    @staticmethod
    def _text_forwarder(on_event: EventCallback) -> Callable[[str], Awaitable[None]]:
        async def forward(text: str) -> None:
            await on_event(StreamEvent(type="text", content=text))

        return forward

    async def _stream_direct(
        self,
        request_id: str,
        classification: ClassificationResult,
        model: str,
        messages: List[Dict[str, Any]],
        on_event: EventCallback,
    ) -> StreamOutcome:
        """Single tool-less streamed call; text is forwarded as it arrives."""
        streamed = await self.gateway.collect_stream(
            self.gateway.stream(
                model,
                messages,
                max_tokens=self.settings.limits.max_tokens_complex,
                temperature=0.7,
            ),
            self._text_forwarder(on_event),
        )
        content, deal_ids = parse_structured_reply(streamed.content)
        if deal_ids:
            await on_event(StreamEvent(type="dealIds", deal_ids=deal_ids))
        tokens = streamed.usage.total_tokens
        await on_event(StreamEvent(type="done", cached=False, tokens_used=tokens))
        return StreamOutcome(
            request_id=request_id,
            content=content,
            intent=classification.intent,
            deal_ids=deal_ids,
            tokens_used=tokens,
            model=model,
        )

    async def _stream_with_tools(
        self,
        request_id: str,
        classification: ClassificationResult,
        model: str,
        messages: List[Dict[str, Any]],
        on_event: EventCallback,
    ) -> StreamOutcome:
        """Buffered tool round, then the final answer streamed.

        Coupons go out as soon as the tools return; deals are held back until
        the model has named the ones it talked about.
        """
        limits = self.settings.limits
        first = await self.gateway.complete(
            model,
            messages,
            tools=self.tools.get_tool_definitions(),
            max_tokens=limits.max_tokens_simple,
            temperature=0.7,
        )
        tokens = first.usage.total_tokens
        cost = first.cost

        if not first.tool_calls:
            content, deal_ids = parse_structured_reply(first.content)
            await on_event(StreamEvent(type="text", content=content))
            if deal_ids:
                await on_event(StreamEvent(type="dealIds", deal_ids=deal_ids))
            await on_event(StreamEvent(type="done", cached=False, tokens_used=tokens))
            return StreamOutcome(
                request_id=request_id,
                content=content,
                intent=classification.intent,
                deal_ids=deal_ids,
                tokens_used=tokens,
                cost=cost,
                model=model,
            )

        logger.info(f"Executing {len(first.tool_calls)} tool(s)")
        results = await self.tools.execute_tool_calls(first.tool_calls)
        found = collect_deals(results)
        coupons = collect_coupons(results)
        if coupons:
            await on_event(StreamEvent(type="coupons", coupons=coupons))

        followup = [dict(m) for m in messages]
        if found:
            followup[-1]["content"] += DEALS_FOUND_HEADER + format_deals_for_context(found)
        followup += PromptBuilder.build_tool_messages(first.tool_calls, results)

        streamed = await self.gateway.collect_stream(
            self.gateway.stream(model, followup, max_tokens=limits.max_tokens_complex, temperature=0.7),
            self._text_forwarder(on_event),
        )
        content, deal_ids = parse_structured_reply(streamed.content)
        tokens += streamed.usage.total_tokens
        deals = reconcile_deals(found, deal_ids)
        if deals:
            await on_event(StreamEvent(type="deals", deals=deals))
        await on_event(StreamEvent(type="done", cached=False, tokens_used=tokens))

        return StreamOutcome(
            request_id=request_id,
            content=content,
            intent=classification.intent,
            deals=deals,
            coupons=coupons,
            deal_ids=deal_ids,
            tokens_used=tokens,
            cost=cost,
            model=model,
        )

    async def health_check(self) -> Dict[str, Any]:
        if not self.settings.features.enabled:
            return {"healthy": False, "reason": "AI disabled"}

        result = await self.gateway.health_check()
        healthy = bool(result.get("healthy"))
        return {
            "healthy": healthy,
            "cache": self.cache.stats(),
            "latencyMs": result.get("latencyMs"),
            "reason": "OK" if healthy else result.get("error"),
        }
