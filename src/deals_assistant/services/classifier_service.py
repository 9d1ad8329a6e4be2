"""Intent classification: keyword/FAQ tier first, cheap-model tier second.

The keyword tier is deterministic and free. The model tier is only used when
zero or several intents match, and its output goes through a tolerant JSON
extraction because small reasoning models like to wrap, think aloud, or get
truncated mid-object.
"""

import asyncio
import json
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from deals_assistant.config import Settings, get_settings
from deals_assistant.models.classification import (
    ClassificationResult,
    Complexity,
    Entities,
    Intent,
)
from deals_assistant.services.entity_extractor import extract_entities
from deals_assistant.services.llm_service import LLMGateway
from deals_assistant.services.prompt_service import (
    CLASSIFICATION_PROMPT,
    CLASSIFICATION_SUFFIX,
    match_faq,
)
from deals_assistant.utils.errors import ClassificationError, OrchestratorException
from deals_assistant.utils.logging import get_logger

logger = get_logger("classifier_service")

LLM_ATTEMPTS = 2
RETRY_DELAY_SECONDS = 0.5
MAX_REPAIR_BRACES = 3

KEYWORD_CONFIDENCE = 0.8
LLM_CONFIDENCE = 0.9
KEYWORD_FALLBACK_CONFIDENCE = 0.6
SEARCH_FALLBACK_CONFIDENCE = 0.4

# Evaluated in this order against the lowercased query.
KEYWORD_PATTERNS: Tuple[Tuple[Intent, Tuple[re.Pattern, ...]], ...] = (
    (
        Intent.SEARCH,
        (
            re.compile(r"\b(find|search|looking for|show me|get me|deals?|products?|where to buy)\b"),
            re.compile(r"\b(suggest|recommend|give me|any|some)\s+\w+"),
            re.compile(r"\b(suggest|recommend)\b"),
            re.compile(r"\b(under|below|less than|cheaper than)\s*\$?\d+"),
            re.compile(r"\b(best|top|good)\s+(deals?|prices?|offers?)"),
            re.compile(r"\b(shirt|shoes?|laptop|phone|tv|headphones?|watch|dress|jacket|bag|home|kitchen|clean)"),
        ),
    ),
    (
        Intent.COUPON,
        (
            re.compile(r"\b(coupon|promo|discount)\s*(code)?s?\b"),
            re.compile(r"\b(code|codes)\s+(for|at)\b"),
            re.compile(r"\boff\s+code\b"),
        ),
    ),
    (
        Intent.COMPARE,
        (
            re.compile(r"\b(compare|vs|versus|or|better|difference between)\b"),
            re.compile(r"\bwhich\s+(is|one|should)\b"),
        ),
    ),
    (
        Intent.ADVICE,
        (
            re.compile(r"\b(should i|is it|good time|worth|wait|buy now)\b"),
            re.compile(r"\b(price (drop|going|will)|when to buy)\b"),
        ),
    ),
    (
        Intent.TRENDING,
        (
            re.compile(r"\b(trending|popular|hot|best|top)\s*(deals?|today|now|this week)?\b"),
            re.compile(r"\bwhat'?s?\s+(hot|trending|popular)\b"),
        ),
    ),
    (
        Intent.STORE_INFO,
        (
            re.compile(r"\b(tell me about|info about|how is|is .+ (good|reliable|legit))\b"),
            re.compile(r"\b(store|company|retailer)\s+(info|information|details)\b"),
        ),
    ),
    (
        Intent.HELP,
        (
            re.compile(r"\b(how (do i|to|can i)|what can you|help|tutorial)\b"),
            re.compile(r"\b(features?|capabilities|functions?)\b"),
        ),
    ),
)

COMPLEX_INDICATORS: Tuple[re.Pattern, ...] = (
    re.compile(r"\b(compare|vs|versus|better|difference)\b"),
    re.compile(r"\b(should i|is it worth|good time|wait|buy now)\b"),
    re.compile(r"\b(analyze|analysis|in-?depth|detailed)\b"),
    re.compile(r"\b(predict|prediction|forecast|will the price)\b"),
    re.compile(r"\b(why|how come|explain|reasoning)\b"),
)

COMPLEX_INTENTS = frozenset({Intent.COMPARE, Intent.ADVICE})

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.S)
_REASONING_BLOCK = re.compile(r"<reasoning>.*?</reasoning>", re.S)
_CODE_FENCE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.S)

_CLOSERS = {"{": "}", "[": "]"}


def strip_model_noise(text: str) -> str:
    """Remove ``<think>``/``<reasoning>`` blocks and markdown fences."""
    cleaned = text.strip()
    if "<think>" in cleaned:
        if "</think>" not in cleaned:
            # Truncated while thinking: nothing after the open tag is usable.
            cleaned = cleaned[: cleaned.rfind("<think>")].strip()
        cleaned = _THINK_BLOCK.sub("", cleaned).strip()
    cleaned = _REASONING_BLOCK.sub("", cleaned).strip()
    fenced = _CODE_FENCE.search(cleaned)
    if fenced:
        cleaned = fenced.group(1).strip()
    return cleaned


def _scan_object(text: str) -> Tuple[int, List[str]]:
    """Walk ``text`` (starting at ``{``) outside of string literals.

    Returns the index just past the top-level object when it closes, else
    ``-1`` and the stack of still-open brackets.
    """
    stack: List[str] = []
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            stack.append(char)
        elif char in ("}", "]") and stack:
            stack.pop()
            if not stack:
                return index + 1, []
    return -1, stack


def extract_json_object(text: str) -> Dict[str, Any]:
    """Pull a JSON object out of raw model output, closing up to three unterminated objects.

    Raises:
        ClassificationError: If no object can be recovered.
    """
    cleaned = strip_model_noise(text or "")
    start = cleaned.find("{")
    if start == -1:
        raise ClassificationError(
            "No JSON content found in response", details={"preview": cleaned[:200]}
        )

    candidate = cleaned[start:]
    end, open_stack = _scan_object(candidate)
    if end != -1:
        candidate = candidate[:end]
    else:
        missing = open_stack.count("{")
        if missing > MAX_REPAIR_BRACES or not open_stack:
            raise ClassificationError(
                "Truncated JSON could not be repaired",
                details={"missing_braces": missing, "preview": candidate[:200]},
            )
        logger.warning(f"Repairing truncated classification JSON ({missing} open braces)")
        candidate += "".join(_CLOSERS[opener] for opener in reversed(open_stack))

    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise ClassificationError(
            f"Invalid JSON: {e.msg}", details={"preview": candidate[:200]}
        ) from e
    if not isinstance(parsed, dict):
        raise ClassificationError("Parsed response is not an object")
    return parsed


def _parse_enum(enum_type, value: Any, default):
    try:
        return enum_type(value)
    except ValueError:
        return default


def _valid_entity_overrides(raw_entities: Dict[str, Any]) -> Dict[str, Any]:
    """Model-supplied entities, field by field; a field that fails validation keeps the regex value."""
    overrides: Dict[str, Any] = {}
    for key, value in raw_entities.items():
        try:
            overrides.update(
                Entities.model_validate({key: value}).model_dump(exclude_unset=True)
            )
        except PydanticValidationError:
            logger.debug(f"Dropping malformed entity from model output: {key}={value!r}")
    return overrides


class IntentClassifier:
    """Two-tier intent classifier with a terminal fallback; ``classify`` never raises."""

    def __init__(
        self,
        gateway: LLMGateway,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.settings = settings or get_settings()
        self._sleep = sleep

    def classify_by_keywords(self, query: str) -> Optional[ClassificationResult]:
        """FAQ match, or a single unambiguous keyword intent. ``None`` when uncertain."""
        faq_response = match_faq(query)
        if faq_response:
            return ClassificationResult(
                intent=Intent.HELP,
                complexity=Complexity.SIMPLE,
                entities=extract_entities(query),
                confidence=1.0,
                faq_response=faq_response,
            )

        normalized = query.lower().strip()
        matches = [
            intent
            for intent, patterns in KEYWORD_PATTERNS
            if any(pattern.search(normalized) for pattern in patterns)
        ]
        if len(matches) != 1:
            return None

        complex_query = any(pattern.search(normalized) for pattern in COMPLEX_INDICATORS)
        return ClassificationResult(
            intent=matches[0],
            complexity=Complexity.COMPLEX if complex_query else Complexity.SIMPLE,
            entities=extract_entities(query),
            confidence=KEYWORD_CONFIDENCE,
        )

    async def classify_by_llm(self, query: str) -> ClassificationResult:
        """Ask the simple model for ``{intent, complexity, entities}``.

        Raises:
            GatewayError: If the model call fails.
            ClassificationError: If the reply cannot be parsed.
        """
        completion = await self.gateway.complete(
            model=self.settings.llm.simple_model,
            messages=[
                {"role": "system", "content": CLASSIFICATION_PROMPT + CLASSIFICATION_SUFFIX},
                {"role": "user", "content": query},
            ],
            max_tokens=self.settings.limits.classification_max_tokens,
            temperature=0.1,
        )
        if not completion.content or not completion.content.strip():
            raise ClassificationError("Empty response from LLM")

        parsed = extract_json_object(completion.content)

        merged = extract_entities(query).model_dump()
        raw_entities = parsed.get("entities") or {}
        if isinstance(raw_entities, dict):
            merged.update(_valid_entity_overrides(raw_entities))

        return ClassificationResult(
            intent=_parse_enum(Intent, parsed.get("intent"), Intent.GENERAL),
            complexity=_parse_enum(Complexity, parsed.get("complexity"), Complexity.SIMPLE),
            entities=Entities(**merged),
            confidence=LLM_CONFIDENCE,
            tokens_used=completion.usage.total_tokens,
            cost=completion.cost,
        )

    async def classify(self, query: str, force_llm: bool = False) -> ClassificationResult:
        if not query or not isinstance(query, str) or not query.strip():
            return ClassificationResult(
                intent=Intent.GENERAL, confidence=0.0, error="Invalid query"
            )

        trimmed = query.strip()
        if len(trimmed) > self.settings.limits.max_input_length:
            return ClassificationResult(
                intent=Intent.GENERAL, confidence=0.0, error="Query too long"
            )

        if not force_llm:
            keyword_result = self.classify_by_keywords(trimmed)
            if keyword_result:
                return keyword_result

        last_error: Optional[str] = None
        for attempt in range(1, LLM_ATTEMPTS + 1):
            try:
                return await self.classify_by_llm(trimmed)
            except OrchestratorException as e:
                last_error = e.message
                logger.warning(
                    f"LLM classification attempt {attempt}/{LLM_ATTEMPTS} failed: {e.message}"
                )
            if attempt < LLM_ATTEMPTS:
                await self._sleep(RETRY_DELAY_SECONDS * attempt)

        logger.warning("All LLM classification attempts failed, using keyword fallback")
        keyword_fallback = self.classify_by_keywords(trimmed)
        if keyword_fallback:
            # A FAQ hit stays certain.
            confidence = (
                keyword_fallback.confidence
                if keyword_fallback.faq_response
                else KEYWORD_FALLBACK_CONFIDENCE
            )
            return keyword_fallback.model_copy(
                update={"confidence": confidence, "fallback_reason": last_error}
            )

        return ClassificationResult(
            intent=Intent.SEARCH,
            complexity=Complexity.SIMPLE,
            entities=extract_entities(trimmed),
            confidence=SEARCH_FALLBACK_CONFIDENCE,
            fallback_reason=last_error,
        )

    def select_model(self, classification: ClassificationResult) -> str:
        """Compare/advice and anything marked complex go to the capable model."""
        if classification.intent in COMPLEX_INTENTS:
            return self.settings.llm.complex_model
        if classification.complexity == Complexity.COMPLEX:
            return self.settings.llm.complex_model
        return self.settings.llm.simple_model
