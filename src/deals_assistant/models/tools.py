"""Tool argument schemas and tagged tool results."""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

DealCategory = Literal[
    "electronics", "fashion", "home", "beauty", "toys", "food", "travel", "other"
]
SortOrder = Literal["price_low", "price_high", "discount", "newest", "popular", "relevance"]
DealId = Union[int, str]


# ---------------------------------------------------------------------------
# Arguments (JSON schemas are generated from these for the model)
# ---------------------------------------------------------------------------


class SearchDealsArgs(BaseModel):
    query: str = Field(..., description="Search terms, e.g. 'wireless headphones'")
    category: Optional[DealCategory] = Field(default=None, description="Product category filter")
    max_price: Optional[float] = Field(default=None, description="Maximum price in USD")
    min_discount: Optional[float] = Field(
        default=None, description="Minimum discount percentage (0-100)"
    )
    store: Optional[str] = Field(default=None, description="Store or merchant name")
    sort_by: SortOrder = Field(default="relevance", description="Result ordering")
    exclude_ids: List[DealId] = Field(
        default_factory=list, description="Deal IDs already shown to the user"
    )


class GetCouponsArgs(BaseModel):
    store: str = Field(..., description="Store name or domain, e.g. 'amazon'")
    category: Optional[str] = Field(default=None, description="Optional coupon category")


class GetTrendingDealsArgs(BaseModel):
    category: Optional[DealCategory] = Field(default=None, description="Optional category filter")
    limit: int = Field(default=5, ge=1, description="Number of deals to return (max 10)")


class GetDealDetailsArgs(BaseModel):
    deal_id: DealId = Field(..., description="ID of the deal to fetch")


class CompareDealsArgs(BaseModel):
    deal_ids: List[DealId] = Field(..., description="Two to five deal IDs to compare")


class GetStoreInfoArgs(BaseModel):
    store: str = Field(..., description="Store or company name")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class DealRecord(BaseModel):
    """A deal row with server-computed ranking fields."""

    model_config = ConfigDict(extra="allow")

    id: DealId
    title: str = ""
    price: Optional[float] = None
    original_price: Optional[float] = None
    merchant: Optional[str] = None
    url: Optional[str] = None
    image_url: Optional[str] = None
    expires_at: Optional[str] = None

    discount_percent: Optional[int] = None
    votes_score: int = 0
    engagement_score: int = 0
    is_urgent: bool = False
    is_trending: bool = False
    urgency_days: Optional[int] = None
    value_score: float = 0.0


class CouponRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: DealId
    title: str = ""
    coupon_code: Optional[str] = None
    discount_type: Optional[str] = None
    discount_value: Optional[float] = None
    expires_at: Optional[str] = None
    is_verified: bool = False
    usage_count: int = 0
    company: Optional[Dict[str, Any]] = None


class PricePoint(BaseModel):
    model_config = ConfigDict(extra="allow")

    price: float
    recorded_at: str


class StoreRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: DealId
    name: str
    active_deals: int = 0
    active_coupons: int = 0


# ---------------------------------------------------------------------------
# Results (tagged by ``kind``)
# ---------------------------------------------------------------------------


class _ResultBase(BaseModel):
    success: bool = True
    error: Optional[str] = None
    execution_time_ms: int = 0


class SearchDealsResult(_ResultBase):
    kind: Literal["search_deals"] = "search_deals"
    deals: List[DealRecord] = Field(default_factory=list)
    count: int = 0
    query: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CouponsResult(_ResultBase):
    kind: Literal["get_coupons"] = "get_coupons"
    coupons: List[CouponRecord] = Field(default_factory=list)
    count: int = 0
    store: Optional[str] = None


class TrendingResult(_ResultBase):
    kind: Literal["get_trending_deals"] = "get_trending_deals"
    deals: List[DealRecord] = Field(default_factory=list)
    count: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DealDetailResult(_ResultBase):
    kind: Literal["get_deal_details"] = "get_deal_details"
    deal: Optional[DealRecord] = None
    price_history: List[PricePoint] = Field(default_factory=list)


class CompareResult(_ResultBase):
    kind: Literal["compare_deals"] = "compare_deals"
    deals: List[DealRecord] = Field(default_factory=list)
    count: int = 0


class StoreInfoResult(_ResultBase):
    kind: Literal["get_store_info"] = "get_store_info"
    store: Optional[StoreRecord] = None


class ToolFailure(_ResultBase):
    """Result slot for a call that could not be executed."""

    kind: Literal["failure"] = "failure"
    success: bool = False
    tool_name: str


ToolResult = Annotated[
    Union[
        SearchDealsResult,
        CouponsResult,
        TrendingResult,
        DealDetailResult,
        CompareResult,
        StoreInfoResult,
        ToolFailure,
    ],
    Field(discriminator="kind"),
]


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    id: str = Field(..., description="Provider tool call id")
    name: str = Field(..., description="Tool name")
    arguments: Dict[str, Any] = Field(default_factory=dict, description="Parsed JSON arguments")
