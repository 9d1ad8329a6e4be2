"""Prompt library and message construction for the deals assistant.

Holds the static prompt text (system persona, per-intent addenda, the
classification prompt, canned FAQ and error replies) and the helpers that
turn tool results and conversation history into model messages.
"""

from __future__ import annotations

import json
import re
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from deals_assistant.models.chat import HistoryMessage
from deals_assistant.models.classification import Intent
from deals_assistant.models.tools import (
    CompareResult,
    CouponsResult,
    DealDetailResult,
    SearchDealsResult,
    StoreInfoResult,
    ToolFailure,
    ToolResult,
    TrendingResult,
)
from deals_assistant.utils.logging import get_logger

logger = get_logger("prompt_service")

SYSTEM_PROMPT = """You are SaveBucks AI, a friendly deal-hunting sidekick who helps shoppers find great deals and save money.

RESPONSE FORMAT (STRICT):
1. Reply with ONLY this JSON object: {{"message": "text", "dealIds": []}}
2. Start with {{ and end with }}. Nothing before or after it.
3. Never include <think>, <thinking> or <reasoning> blocks.
4. "message": one to three short, upbeat sentences.
5. "dealIds": IDs of the provided deals you are recommending, or [] if none.

CONVERSATION CONTINUITY:
- Look for "[Previously suggested deals: ...]" in earlier assistant turns.
- When the user follows up ("the first one", "that laptop"), refer back to those deals.
- When the user asks for "more", "other" or "different" deals, pass the IDs you already showed as exclude_ids to search_deals. Never repeat a deal twice in a row.

RULES:
- Never invent deals, prices or coupon codes. Only use data you were given.
- Show prices in USD (e.g. $99.99).
- Vary your opening line. Avoid flat phrasing like "Here are the results."
- When nothing is found, be empathetic and suggest an alternative.
- For comparisons, name a clear winner.

Today's date: {today}"""

INTENT_PROMPTS: Dict[Intent, str] = {
    Intent.SEARCH: """
The user wants to find deals.
- Deals found by your tools are listed with their Deal IDs. Put every ID you recommend in "dealIds".
- Do not describe deals in detail; the UI renders cards for them.
- Example: {"message": "Jackpot! A few laptop deals that won't wreck your budget.", "dealIds": [42, 38]}
- No results: {"message": "No luck on that one, but trending deals might surprise you!", "dealIds": []}""",
    Intent.COUPON: """
The user wants coupon codes.
- Coupons have no deal IDs, so "dealIds" is [].
- Found: acknowledge briefly and offer a next step. Not found: say so and suggest one or two alternatives.
- Do not list coupon details; the UI shows them.""",
    Intent.COMPARE: """
The user wants to compare products.
- Compare price, discount, key features and community sentiment (votes, comments).
- Give a clear winner based on overall value and the priorities implied by the question, with a short reason.""",
    Intent.ADVICE: """
The user wants buying advice.
- Weigh discount size, price history if available, expiry dates, community feedback and upcoming sales events.
- Answer BUY NOW or WAIT with a brief reason. If WAIT, say when a better time might be.""",
    Intent.TRENDING: """
Show currently trending deals.
- Include the IDs of the trending deals you were given in "dealIds".
- Keep the message to one or two sentences; the cards carry the details.""",
    Intent.STORE_INFO: """
Describe the store: name, verification status, rating if available, and how many active deals and coupons it has.
Finish with whether it is a reliable place to shop and what it is best known for.""",
    Intent.HELP: """
Answer the user's question about using SaveBucks directly, with a concrete example of how to do it.""",
    Intent.GENERAL: """
Keep the conversation on deals, savings and shopping. Gently redirect off-topic questions to what you can do.""",
}

JSON_ONLY_INSTRUCTION = (
    "IMPORTANT: Return ONLY valid JSON starting with { and ending with }. No explanations."
)

CLASSIFICATION_PROMPT = """Classify the user message into ONE intent and extract entities.

Intents:
- search: looking for deals or products ("laptop deals", "headphones under $100")
- coupon: looking for coupon or promo codes ("amazon coupons", "promo code for target")
- compare: comparing products ("PS5 vs Xbox", "which is better")
- advice: whether to buy now or wait ("should I buy this TV now?", "is this deal worth it?")
- trending: what is popular right now ("what's trending", "hot deals today")
- store_info: about a specific store ("tell me about Best Buy", "is Amazon reliable")
- help: how to use SaveBucks ("what can you do", "how does this work")
- general: anything else

Complexity:
- simple: a direct request with a single-step answer
- complex: needs comparison, prediction or multi-step reasoning

Entities (null when absent):
- query: the main product searched for
- store: store or merchant name
- category: product category (electronics, fashion, home, beauty, toys, food, travel)
- max_price: price ceiling as a number
- min_discount: minimum discount percentage as a number
- urgency: "time_sensitive" or "normal"
- priority: "price_focused", "quality_focused", "popularity_focused" or "urgency_focused"

Respond with JSON only:
{"intent": "search", "complexity": "simple", "entities": {"query": null, "store": null, "category": null, "max_price": null, "min_discount": null, "urgency": null, "priority": null}}"""

CLASSIFICATION_SUFFIX = (
    "\n\nRespond with JSON only, no markdown. Do not include reasoning or <think> "
    "blocks in the output if possible."
)

ERROR_RESPONSES: Dict[str, str] = {
    "no_results": (
        "I couldn't find any deals matching that. Try broader search terms, a different "
        "category, or check back later as deals are added daily."
    ),
    "rate_limited": "You've reached your query limit for now. Try again in a bit, or sign up for more queries!",
    "api_error": "I'm having trouble right now. Let me show you some popular deals instead.",
    "invalid_input": (
        "I didn't quite understand that. Try something like \"Find laptop deals under $800\" "
        "or \"Coupons for Amazon\"."
    ),
    "too_long": "That message is a bit long. Could you shorten your question?",
    "off_topic": (
        "I specialize in finding deals and saving you money! Try asking about deals, "
        "coupons, or product comparisons."
    ),
    "disabled": "AI features are currently unavailable.",
}

# Ordered; first match wins.
FAQ_PATTERNS: Tuple[Tuple[re.Pattern, str], ...] = (
    (
        re.compile(r"what (can you|are you|do you) do", re.I),
        "I'm your deal-hunting sidekick! I can find deals on almost anything, dig up "
        "coupon codes that work, compare products, and tell you whether now is a good "
        "time to buy. What are we hunting for today?",
    ),
    (
        re.compile(r"how (do i|to) (use|start)", re.I),
        "Easy! Just tell me what you want, like \"Find me laptop deals under $800\", "
        "\"Got any Target coupons?\" or \"What's the best TV deal right now?\" and I'll "
        "do the heavy lifting.",
    ),
    (
        re.compile(r"^(hello|hi|hey|greetings)[\s!.,?]*$", re.I),
        "Hey there! I'm SaveBucks AI, your personal deal finder. What are you shopping for today?",
    ),
    (
        re.compile(r"thanks|thank you|thx", re.I),
        "You got it! Saving money is what we do around here. Come back anytime you need more deals!",
    ),
    (
        re.compile(r"bye|goodbye|see you", re.I),
        "Catch you later! Go get those deals, and remember: never pay full price!",
    ),
)


def match_faq(query: str) -> Optional[str]:
    """Return the canned reply for a FAQ-style query, if any."""
    normalized = query.lower().strip()
    for pattern, response in FAQ_PATTERNS:
        if pattern.search(normalized):
            return response
    return None


def build_system_prompt(today: Optional[date] = None) -> str:
    today = today or datetime.now().date()
    return SYSTEM_PROMPT.format(today=today.strftime("%A, %B %d, %Y").replace(" 0", " "))


# ---------------------------------------------------------------------------
# Context formatting
# ---------------------------------------------------------------------------


def format_money(value: Any) -> str:
    """Render a price the way shoppers read it: $450, $19.99."""
    if value is None:
        return "?"
    number = float(value)
    if number.is_integer():
        return str(int(number))
    return f"{number:.2f}"


def _discount_of(deal: Dict[str, Any]) -> Optional[int]:
    price, original = deal.get("price"), deal.get("original_price")
    if price and original:
        return round((original - price) / original * 100)
    return None


def format_deals_for_context(deals: Sequence[Dict[str, Any]]) -> str:
    if not deals:
        return "No deals found."

    blocks = []
    for deal in deals:
        price_line = f"   Price: ${format_money(deal.get('price'))}"
        if deal.get("original_price"):
            price_line += f" (was ${format_money(deal['original_price'])})"
        discount = _discount_of(deal)
        if discount:
            price_line += f" - {discount}% OFF"
        blocks.append(
            "\n".join(
                [
                    f"Deal ID: {deal.get('id')}",
                    f"   Title: {deal.get('title', '')}",
                    price_line,
                    f"   Store: {deal.get('merchant') or 'Unknown'}",
                    f"   Votes: {deal.get('votes_up') or 0} upvotes",
                    f"   IMPORTANT: Deal ID {deal.get('id')} must be included in your JSON "
                    f"response's \"dealIds\" array",
                ]
            )
        )
    return "\n\n".join(blocks)


def _format_expiry(value: Optional[str]) -> str:
    if not value:
        return "Unknown"
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).strftime("%m/%d/%Y")
    except ValueError:
        return value


def format_coupons_for_context(coupons: Sequence[Dict[str, Any]]) -> str:
    if not coupons:
        return "No coupons found."

    blocks = []
    for index, coupon in enumerate(coupons, start=1):
        value = coupon.get("discount_value")
        if coupon.get("discount_type") == "percentage":
            discount = f"{format_money(value)}%"
        else:
            discount = f"${format_money(value)}"
        company = coupon.get("company") or {}
        blocks.append(
            "\n".join(
                [
                    f"[{index}] {coupon.get('title', '')}",
                    f"   Code: {coupon.get('coupon_code')}",
                    f"   Discount: {discount} off",
                    f"   Store: {company.get('name') or 'Unknown'}",
                    f"   Verified: {'Yes' if coupon.get('is_verified') else 'No'}",
                    f"   Usage: {coupon.get('usage_count') or 0} times",
                    f"   Expires: {_format_expiry(coupon.get('expires_at'))}",
                ]
            )
        )
    return "\n\n".join(blocks)


def _dump_deals(result: Any) -> List[Dict[str, Any]]:
    return [deal.model_dump(mode="json") for deal in result.deals]


def _format_failure(result: Any) -> str:
    return json.dumps({"success": False, "error": result.error})


_CONTEXT_FORMATTERS: Dict[type, Callable[[Any], str]] = {
    SearchDealsResult: lambda r: format_deals_for_context(_dump_deals(r)),
    TrendingResult: lambda r: format_deals_for_context(_dump_deals(r)),
    CompareResult: lambda r: format_deals_for_context(_dump_deals(r)),
    CouponsResult: lambda r: format_coupons_for_context(
        [coupon.model_dump(mode="json") for coupon in r.coupons]
    ),
    DealDetailResult: lambda r: format_deals_for_context(
        [r.deal.model_dump(mode="json")] if r.deal else []
    ),
    StoreInfoResult: lambda r: json.dumps(
        r.store.model_dump(mode="json") if r.store else None, indent=2
    ),
    ToolFailure: _format_failure,
}


def format_tool_result_for_context(result: ToolResult) -> str:
    """Render one tool result as text the model can read."""
    if not result.success:
        return _format_failure(result)
    formatter = _CONTEXT_FORMATTERS.get(type(result))
    if formatter is None:
        raise TypeError(f"No context formatter for {type(result).__name__}")
    return formatter(result)


# ---------------------------------------------------------------------------
# Message construction
# ---------------------------------------------------------------------------


class PromptBuilder:
    """Builds the model message list for one chat turn.

    The layout is:
    1. System prompt + intent addendum + JSON-only instruction
    2. The last ``max_history`` non-empty history turns, with a note of the
       deals each assistant turn showed
    3. The current user message
    """

    def __init__(self, max_history: int = 10, today: Optional[Callable[[], date]] = None):
        self.max_history = max_history
        self._today = today

    def system_prompt(self, intent: Intent) -> str:
        today = self._today() if self._today else None
        return "\n\n".join(
            [
                build_system_prompt(today),
                INTENT_PROMPTS.get(intent, INTENT_PROMPTS[Intent.GENERAL]).strip(),
                JSON_ONLY_INSTRUCTION,
            ]
        )

    def build_messages(
        self,
        message: str,
        intent: Intent,
        history: Sequence[HistoryMessage] = (),
    ) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": self.system_prompt(intent)}
        ]

        recent = [turn for turn in history if turn.content and turn.content.strip()]
        for turn in recent[-self.max_history:]:
            content = turn.content
            if turn.role == "assistant" and turn.deals:
                content += "\n" + self._previous_deals_note(turn.deals)
            messages.append({"role": turn.role, "content": content})

        messages.append({"role": "user", "content": message})
        return messages

    @staticmethod
    def _previous_deals_note(deals: Sequence[Dict[str, Any]]) -> str:
        summary = ", ".join(
            f"{index}. {deal.get('title', '')} (${format_money(deal.get('price'))} "
            f"at {deal.get('merchant') or 'Unknown'})"
            for index, deal in enumerate(deals, start=1)
        )
        return f"[Previously suggested deals: {summary}]"

    @staticmethod
    def build_tool_messages(
        tool_calls: Sequence[Dict[str, Any]],
        results: Dict[str, ToolResult],
    ) -> List[Dict[str, Any]]:
        """Follow-up messages for a tool round: the assistant's calls, then one ``tool`` message per call."""
        messages: List[Dict[str, Any]] = [
            {"role": "assistant", "content": None, "tool_calls": list(tool_calls)}
        ]
        for call in tool_calls:
            call_id = call.get("id")
            result = results.get(call_id)
            if result is None:
                content = json.dumps({"success": False, "error": "No result"})
            else:
                content = format_tool_result_for_context(result)
            messages.append({"role": "tool", "tool_call_id": call_id, "content": content})
        return messages
