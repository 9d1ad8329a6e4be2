"""Tool registry and executor for the deals assistant.

Six read-only tools back the model's function calls. Each is a ``ToolSpec``
whose pydantic args model is also the JSON schema handed to the model.
Deal rows are enriched server-side (discount, engagement, urgency, value
score); whatever the model says about those numbers is never used.
"""

from __future__ import annotations

import asyncio
import json
import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from deals_assistant.clients.supabase_client import SupabaseClient
from deals_assistant.config import Settings, get_settings
from deals_assistant.models.tools import (
    CompareDealsArgs,
    CompareResult,
    CouponRecord,
    CouponsResult,
    DealDetailResult,
    DealRecord,
    GetCouponsArgs,
    GetDealDetailsArgs,
    GetStoreInfoArgs,
    GetTrendingDealsArgs,
    PricePoint,
    SearchDealsArgs,
    SearchDealsResult,
    StoreInfoResult,
    StoreRecord,
    ToolCall,
    ToolFailure,
    ToolResult,
    TrendingResult,
)
from deals_assistant.services.cache_service import CacheService
from deals_assistant.utils.errors import ExternalServiceError
from deals_assistant.utils.logging import get_logger

logger = get_logger("tool_service")

ToolHandler = Callable[[Any], Awaitable[BaseModel]]

DEAL_COLUMNS = (
    "id,title,url,price,original_price,merchant,description,image_url,"
    "views_count,clicks_count,votes_up,votes_down,comment_count,created_at,expires_at,status"
)
COUPON_COLUMNS = (
    "id,title,description,coupon_code,discount_value,discount_type,min_purchase,"
    "expires_at,is_verified,usage_count,company:companies(id,name,logo_url)"
)
STORE_COLUMNS = "id,name,domain,logo_url,description,website,is_verified,rating,review_count"

SORT_ORDERS: Dict[str, str] = {
    "price_low": "price.asc",
    "price_high": "price.desc",
    "newest": "created_at.desc",
    "popular": "views_count.desc",
    "relevance": "views_count.desc",
    # Discount is derived, so it is ranked after enrichment.
    "discount": "views_count.desc",
}

URGENCY_WINDOW = timedelta(days=7)
MAX_COMPARE = 5
PRICE_HISTORY_LIMIT = 30

_TOOL_RESULT_ADAPTER: TypeAdapter = TypeAdapter(ToolResult)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _sanitize_term(term: str) -> str:
    """Drop characters that would break a PostgREST ``or=(...)`` expression."""
    return "".join(ch for ch in term if ch not in ",()*\"\\").strip()


def discount_percent(price: Any, original_price: Any) -> Optional[int]:
    if not price or not original_price:
        return None
    return _round_half_up((float(original_price) - float(price)) / float(original_price) * 100)


def enrich_deal(row: Dict[str, Any], now: datetime) -> DealRecord:
    """Attach the derived ranking fields to a raw deal row.

    Engagement counts views and clicks when the row carries them, otherwise
    up-votes and comments.
    """
    discount = discount_percent(row.get("price"), row.get("original_price"))
    votes = int(row.get("votes_up") or 0) - int(row.get("votes_down") or 0)
    if row.get("views_count") is not None or row.get("clicks_count") is not None:
        engagement = int(row.get("views_count") or 0) + int(row.get("clicks_count") or 0)
    else:
        engagement = int(row.get("votes_up") or 0) + int(row.get("comment_count") or 0)

    expires = _parse_timestamp(row.get("expires_at"))
    is_urgent = expires is not None and expires < now + URGENCY_WINDOW
    urgency_days = (
        math.ceil((expires - now).total_seconds() / 86400) if expires is not None else None
    )

    value = (
        (discount or 0) * 2
        + min(votes * 0.5, 20)
        + min(engagement * 0.3, 15)
        + (10 if is_urgent else 0)
    )

    enriched = dict(row)
    enriched.update(
        discount_percent=discount,
        votes_score=votes,
        engagement_score=engagement,
        is_urgent=is_urgent,
        is_trending=engagement > 30 or votes > 20,
        urgency_days=urgency_days,
        value_score=_round_half_up(value),
    )
    return DealRecord.model_validate(enriched)


@dataclass(frozen=True)
class ToolSpec:
    """Tool registry entry: schema source (args_model), description and handler."""

    name: str
    args_model: Type[BaseModel]
    handler: ToolHandler
    description: str


class ToolService:
    """Service responsible for tool definitions and isolated execution."""

    def __init__(
        self,
        supabase: SupabaseClient,
        cache: Optional[CacheService] = None,
        settings: Optional[Settings] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.settings = settings or get_settings()
        self._db = supabase
        self._cache = cache
        self._now = now

        self._tools: Dict[str, ToolSpec] = {
            "search_deals": ToolSpec(
                name="search_deals",
                args_model=SearchDealsArgs,
                handler=self._handle_search_deals,
                description="Search for deals matching user criteria. Use when user wants to find products or deals.",
            ),
            "get_coupons": ToolSpec(
                name="get_coupons",
                args_model=GetCouponsArgs,
                handler=self._handle_get_coupons,
                description="Get active coupon codes for a store or category.",
            ),
            "get_trending_deals": ToolSpec(
                name="get_trending_deals",
                args_model=GetTrendingDealsArgs,
                handler=self._handle_get_trending_deals,
                description="Get currently trending/hot deals with high community engagement.",
            ),
            "get_deal_details": ToolSpec(
                name="get_deal_details",
                args_model=GetDealDetailsArgs,
                handler=self._handle_get_deal_details,
                description="Get detailed information about a specific deal including price history.",
            ),
            "compare_deals": ToolSpec(
                name="compare_deals",
                args_model=CompareDealsArgs,
                handler=self._handle_compare_deals,
                description="Compare multiple deals side by side.",
            ),
            "get_store_info": ToolSpec(
                name="get_store_info",
                args_model=GetStoreInfoArgs,
                handler=self._handle_get_store_info,
                description="Get information about a retailer/store including ratings and available deals.",
            ),
        }

    @property
    def tool_names(self) -> List[str]:
        return list(self._tools)

    def get_tool_definitions(self) -> List[Dict[str, Any]]:
        """Return tool definitions in OpenAI-style JSON schema (LiteLLM compatible)."""
        definitions: List[Dict[str, Any]] = []
        for tool_name, spec in self._tools.items():
            schema = spec.args_model.model_json_schema()
            parameters = {
                k: v
                for k, v in schema.items()
                if k in {"type", "properties", "required", "additionalProperties", "$defs"}
            }
            if "type" not in parameters:
                parameters["type"] = "object"

            definitions.append(
                {
                    "type": "function",
                    "function": {
                        "name": tool_name,
                        "description": spec.description,
                        "parameters": parameters,
                    },
                }
            )
        return definitions

    async def execute_tool(self, tool_name: str, arguments: Dict[str, Any]) -> ToolResult:
        """Run one tool. Never raises: every failure comes back as a ``ToolFailure``."""
        started = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        spec = self._tools.get(tool_name)
        if spec is None:
            logger.error(f"Unknown tool: {tool_name}")
            return ToolFailure(tool_name=tool_name, error=f"Unknown tool: {tool_name}")

        try:
            parsed_args = spec.args_model.model_validate(arguments)
        except PydanticValidationError as e:
            logger.warning(f"Invalid arguments for tool '{tool_name}': {e.errors()}")
            return ToolFailure(
                tool_name=tool_name,
                error=f"Invalid arguments for tool '{tool_name}'",
                execution_time_ms=elapsed(),
            )

        cache_args = parsed_args.model_dump(mode="json")
        if self._cache is not None:
            cached = await self._cache.get_tool_result(tool_name, cache_args)
            if cached is not None:
                result = _TOOL_RESULT_ADAPTER.validate_python(cached)
                result.execution_time_ms = elapsed()
                logger.debug(f"Tool cache hit: {tool_name}")
                return result

        try:
            result = await spec.handler(parsed_args)
        except Exception as e:
            logger.error(f"Error executing tool {tool_name}: {e}", exc_info=True)
            return ToolFailure(tool_name=tool_name, error=str(e), execution_time_ms=elapsed())

        result.execution_time_ms = elapsed()
        logger.info(
            f"Tool executed: {tool_name}",
            extra={
                "extra_fields": {
                    "tool_name": tool_name,
                    "success": result.success,
                    "execution_time_ms": result.execution_time_ms,
                }
            },
        )
        if result.success and self._cache is not None:
            await self._cache.set_tool_result(tool_name, cache_args, result.model_dump(mode="json"))
        return result

    @staticmethod
    def parse_tool_call(raw: Dict[str, Any]) -> ToolCall:
        """OpenAI-style ``{id, function: {name, arguments}}`` -> ``ToolCall``.

        Raises:
            ValueError: If the argument string is not a JSON object.
        """
        function = raw.get("function") or {}
        arguments = function.get("arguments") or {}
        if isinstance(arguments, str):
            arguments = json.loads(arguments) if arguments.strip() else {}
        if not isinstance(arguments, dict):
            raise ValueError("Tool arguments must be a JSON object")
        return ToolCall(id=raw.get("id") or "", name=function.get("name") or "", arguments=arguments)

    async def execute_tool_calls(self, tool_calls: List[Dict[str, Any]]) -> Dict[str, ToolResult]:
        """Run every requested call concurrently; the result map is keyed by call id."""
        if not tool_calls:
            return {}

        async def run(raw: Dict[str, Any]) -> Tuple[str, ToolResult]:
            call_id = raw.get("id") or ""
            try:
                call = self.parse_tool_call(raw)
            except ValueError as e:
                name = (raw.get("function") or {}).get("name") or "unknown"
                logger.warning(f"Unparseable arguments for tool call {call_id}: {e}")
                return call_id, ToolFailure(tool_name=name, error="Invalid tool arguments")
            return call.id, await self.execute_tool(call.name, call.arguments)

        pairs = await asyncio.gather(*(run(raw) for raw in tool_calls))
        return dict(pairs)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _enrich_all(self, rows: List[Dict[str, Any]]) -> List[DealRecord]:
        now = self._now()
        return [enrich_deal(row, now) for row in rows]

    async def _handle_search_deals(self, args: SearchDealsArgs) -> SearchDealsResult:
        params: List[Tuple[str, Any]] = [
            ("select", DEAL_COLUMNS),
            ("status", "eq.approved"),
            ("order", SORT_ORDERS.get(args.sort_by, "views_count.desc")),
            ("limit", self.settings.limits.max_tool_results),
        ]
        term = _sanitize_term(args.query)
        if term:
            params.append(
                ("or", f"(title.ilike.*{term}*,description.ilike.*{term}*,merchant.ilike.*{term}*)")
            )
        if args.max_price:
            params.append(("price", f"lte.{args.max_price}"))
        if args.store:
            params.append(("merchant", f"ilike.*{_sanitize_term(args.store)}*"))
        exclude = [str(deal_id) for deal_id in args.exclude_ids if str(deal_id)]
        if exclude:
            quoted = ",".join(f'"{deal_id}"' for deal_id in exclude)
            params.append(("id", f"not.in.({quoted})"))

        rows = await self._db.select("deals", params)
        deals = self._enrich_all(rows)

        if args.min_discount:
            deals = [d for d in deals if d.discount_percent and d.discount_percent >= args.min_discount]
        if args.sort_by == "discount":
            deals.sort(key=lambda d: d.discount_percent or 0, reverse=True)

        count = len(deals)
        return SearchDealsResult(
            deals=deals,
            count=count,
            query=args.query,
            metadata={
                "avg_discount": _round_half_up(sum(d.discount_percent or 0 for d in deals) / count)
                if count
                else 0,
                "total_engagement": sum(d.engagement_score for d in deals),
                "urgent_count": sum(1 for d in deals if d.is_urgent),
            },
        )

    async def _find_company(self, store: str, columns: str) -> Optional[Dict[str, Any]]:
        term = _sanitize_term(store)
        return await self._db.select(
            "companies",
            [
                ("select", columns),
                ("or", f"(name.ilike.*{term}*,domain.ilike.*{term}*)"),
                ("limit", 1),
            ],
            single=True,
        )

    async def _handle_get_coupons(self, args: GetCouponsArgs) -> CouponsResult:
        company = await self._find_company(args.store, "id,name,domain,logo_url")
        now_iso = self._now().isoformat()

        params: List[Tuple[str, Any]] = [
            ("select", COUPON_COLUMNS),
            ("is_active", "eq.true"),
            ("or", f"(expires_at.is.null,expires_at.gt.{now_iso})"),
            ("order", "is_verified.desc,usage_count.desc"),
            ("limit", self.settings.limits.max_tool_results),
        ]
        if company:
            params.append(("company_id", f"eq.{company['id']}"))
        else:
            term = _sanitize_term(args.store)
            params.append(("or", f"(title.ilike.*{term}*,description.ilike.*{term}*)"))

        rows = await self._db.select("coupons", params)
        coupons = [CouponRecord.model_validate(row) for row in rows]
        return CouponsResult(
            coupons=coupons,
            count=len(coupons),
            store=company["name"] if company else args.store,
        )

    async def _handle_get_trending_deals(self, args: GetTrendingDealsArgs) -> TrendingResult:
        limit = min(args.limit, self.settings.limits.max_tool_results)
        rows = await self._db.select(
            "deals",
            [
                ("select", DEAL_COLUMNS),
                ("status", "eq.approved"),
                ("order", "views_count.desc"),
                ("limit", limit),
            ],
        )
        deals = self._enrich_all(rows)
        count = len(deals)
        return TrendingResult(
            deals=deals,
            count=count,
            metadata={
                "trending_count": sum(1 for d in deals if d.is_trending),
                "avg_engagement": _round_half_up(sum(d.engagement_score for d in deals) / count)
                if count
                else 0,
            },
        )

    async def _handle_get_deal_details(self, args: GetDealDetailsArgs) -> DealDetailResult:
        row = await self._db.select(
            "deals",
            [
                ("select", f"{DEAL_COLUMNS},company:companies(id,name,logo_url,domain)"),
                ("id", f"eq.{args.deal_id}"),
            ],
            single=True,
        )
        if not row:
            return DealDetailResult(success=False, error="Deal not found")

        history: List[PricePoint] = []
        try:
            points = await self._db.select(
                "price_history",
                [
                    ("select", "price,recorded_at"),
                    ("deal_id", f"eq.{args.deal_id}"),
                    ("order", "recorded_at.desc"),
                    ("limit", PRICE_HISTORY_LIMIT),
                ],
            )
            history = [PricePoint.model_validate(point) for point in points]
        except ExternalServiceError as e:
            logger.debug(f"Price history unavailable for deal {args.deal_id}: {e.message}")

        return DealDetailResult(deal=enrich_deal(row, self._now()), price_history=history)

    async def _handle_compare_deals(self, args: CompareDealsArgs) -> CompareResult:
        if len(args.deal_ids) < 2:
            return CompareResult(success=False, error="Need at least 2 deals to compare")

        ids = ",".join(str(deal_id) for deal_id in args.deal_ids[:MAX_COMPARE])
        rows = await self._db.select(
            "deals", [("select", DEAL_COLUMNS), ("id", f"in.({ids})")]
        )
        deals = self._enrich_all(rows)
        return CompareResult(deals=deals, count=len(deals))

    async def _handle_get_store_info(self, args: GetStoreInfoArgs) -> StoreInfoResult:
        company = await self._find_company(args.store, STORE_COLUMNS)
        if not company:
            return StoreInfoResult(success=False, error="Store not found")

        deal_count, coupon_count = await asyncio.gather(
            self._db.count(
                "deals",
                [
                    ("merchant", f"ilike.*{_sanitize_term(company['name'])}*"),
                    ("status", "eq.approved"),
                ],
            ),
            self._db.count(
                "coupons",
                [("company_id", f"eq.{company['id']}"), ("is_active", "eq.true")],
            ),
        )
        store = StoreRecord.model_validate(
            {**company, "active_deals": deal_count, "active_coupons": coupon_count}
        )
        return StoreInfoResult(store=store)
