"""Intent classification models."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class Intent(str, Enum):
    SEARCH = "search"
    COUPON = "coupon"
    COMPARE = "compare"
    ADVICE = "advice"
    TRENDING = "trending"
    STORE_INFO = "store_info"
    HELP = "help"
    GENERAL = "general"


class Complexity(str, Enum):
    SIMPLE = "simple"
    COMPLEX = "complex"


class Entities(BaseModel):
    """Structured fields pulled out of a shopping query. All optional."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    query: Optional[str] = None
    store: Optional[str] = None
    category: Optional[str] = None
    max_price: Optional[float] = None
    min_discount: Optional[float] = None
    urgency: Optional[str] = None
    priority: Optional[str] = None


class ClassificationResult(BaseModel):
    """Output of the intent classifier."""

    intent: Intent = Field(..., description="Coarse category of the request")
    complexity: Complexity = Field(default=Complexity.SIMPLE)
    entities: Entities = Field(default_factory=Entities)
    confidence: float = Field(..., ge=0.0, le=1.0)
    faq_response: Optional[str] = Field(
        default=None, description="Canned answer that short-circuits the model"
    )
    tokens_used: int = Field(default=0)
    cost: float = Field(default=0.0)
    fallback_reason: Optional[str] = Field(
        default=None, description="Why the model tier was bypassed"
    )
    error: Optional[str] = None

    @model_validator(mode="after")
    def faq_is_certain(self) -> "ClassificationResult":
        if self.faq_response is not None and self.confidence != 1.0:
            raise ValueError("FAQ responses must carry confidence 1.0")
        return self
