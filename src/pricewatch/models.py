from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

# ProductQuery
# Canonical search intent, built once per request and never modified.
class ProductQuery(BaseModel):
    model_config = ConfigDict(frozen=True)

    platform: Optional[str] = None          # "shopee", "lazada", "tiki"
    product_id: Optional[str] = None        # platform-local id, e.g. "i.123.456"
    canonical_url: Optional[str] = None
    title_hint: Optional[str] = None        # free text for keyword / image fallback
    metadata: Optional[Dict[str, str]] = None

    @model_validator(mode="after")
    def _has_search_intent(self):
        has_id = bool(self.platform and self.product_id)
        if not (has_id or self.canonical_url or self.title_hint):
            raise ValueError("ProductQuery needs platform+product_id, canonical_url or title_hint")
        return self

    def search_text(self) -> str:
        """Best text to hand a keyword search engine."""
        return self.title_hint or self.product_id or self.canonical_url or ""


# ProductCandidate
# One listing from a scraper. Frozen: the recommendation engine and the
# pipeline attach labels / scores through model_copy(update=...).
class ProductCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    platform: str
    title: str = ""
    price: float = Field(ge=0)
    shipping_cost: float = Field(0.0, ge=0)
    shop_name: str = ""
    shop_rating: Optional[float] = Field(None, ge=0, le=5)   # None = unrated, 0 = rejected
    shop_sales: int = Field(0, ge=0)
    product_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    labels: Tuple[str, ...] = ()
    match_score: Optional[float] = None
    image_similarity: Optional[float] = None
    is_image_match: Optional[bool] = None
    original_price: Optional[float] = None
    discount_percent: Optional[float] = None

    @computed_field
    @property
    def total_cost(self) -> float:
        return self.price + self.shipping_cost


class RecommendationOptions(BaseModel):
    """Ranking weights. Sum of the three main weights should be 1.0 (not enforced)."""

    model_config = ConfigDict(frozen=True)

    weight_price: float = 0.7
    weight_rating: float = 0.2
    weight_shipping: float = 0.1
    weight_title: float = 0.0
    trusted_shop_sales_threshold: int = Field(50, ge=0)
    min_price_ratio: float = Field(0.3, ge=0, le=1)


class SearchType(str, Enum):
    url = "url"
    keyword = "keyword"
    image = "image"


class SearchState(str, Enum):
    pending = "Pending"
    processing = "Processing"
    completed = "Completed"
    failed = "Failed"


TERMINAL_STATES = (SearchState.completed, SearchState.failed)


def new_search_id() -> str:
    return uuid4().hex


class SearchJob(BaseModel):
    search_id: str = Field(default_factory=new_search_id)
    user_id: Optional[int] = None
    search_type: SearchType = SearchType.url
    url: Optional[str] = None
    keyword: Optional[str] = None
    image_bytes: Optional[bytes] = Field(None, repr=False)
    image_content_type: Optional[str] = None
    query_override: Optional[ProductQuery] = None

    def input_content(self) -> str:
        """What the user actually typed / uploaded, for history records."""
        if self.url:
            return self.url
        if self.keyword:
            return self.keyword
        if self.query_override and self.query_override.canonical_url:
            return self.query_override.canonical_url
        return "image" if self.search_type == SearchType.image else ""


class SearchStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    search_id: str
    status: SearchState = SearchState.pending
    message: Optional[str] = None
    results: Optional[Tuple[ProductCandidate, ...]] = None    # only when Completed
    error_message: Optional[str] = None                       # only when Failed
    updated_at: datetime


class SearchHistoryEntry(BaseModel):
    history_id: str
    search_id: Optional[str] = None
    user_id: Optional[int] = None
    search_type: Optional[str] = None
    input_content: Optional[str] = None
    detected_keyword: Optional[str] = None
    platform: Optional[str] = None
    product_id: Optional[str] = None
    best_price_found: Optional[float] = None
    result_count: int = 0
    search_time: Optional[datetime] = None


# SearchSubmitReq
# Used by: POST /search/submit
class SearchSubmitReq(BaseModel):
    user_id: Optional[int] = None
    url: Optional[str] = None
    keyword: Optional[str] = None


class SearchSubmitted(BaseModel):
    search_id: str
