"""
Pydantic schemas for parent/child performance records with coercion
"""

from datetime import date
from typing import Any, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

# Metric columns by coercion rule
COUNT_FIELDS = (
    "search_query_volume",
    "total_query_impression_count",
    "asin_impression_count",
    "total_click_count",
    "asin_click_count",
    "total_same_day_shipping_click_count",
    "total_one_day_shipping_click_count",
    "total_two_day_shipping_click_count",
    "total_cart_add_count",
    "asin_cart_add_count",
    "total_purchase_count",
    "asin_purchase_count",
)

RATE_FIELDS = (
    "search_query_score",
    "asin_impression_share",
    "total_click_rate",
    "asin_click_share",
    "total_cart_add_rate",
    "asin_cart_add_share",
    "total_purchase_rate",
    "asin_purchase_share",
)

PRICE_FIELDS = (
    "total_median_click_price",
    "asin_median_click_price",
    "total_median_cart_add_price",
    "asin_median_cart_add_price",
    "total_median_purchase_price",
    "asin_median_purchase_price",
)

SHARE_FIELDS = tuple(f for f in RATE_FIELDS if f.endswith("_share"))

ParentKey = Tuple[str, date, date]


def coerce_count(value: Any) -> int:
    """Missing or unparseable counts become 0"""
    if value is None or value == "":
        return 0
    try:
        return int(float(value))  # Handle "10.0" strings
    except (ValueError, TypeError):
        return 0


def coerce_rate(value: Any) -> float:
    """Missing or unparseable rates become 0.0"""
    if value is None or value == "":
        return 0.0
    try:
        result = float(value)
    except (ValueError, TypeError):
        return 0.0
    return 0.0 if result != result else result  # NaN


def coerce_price(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        result = float(value)
    except (ValueError, TypeError):
        return None
    return None if result != result else result


class AsinPerformanceIn(BaseModel):
    """Parent record identity as read from the warehouse"""

    asin: str = Field(..., min_length=1, max_length=20)
    start_date: date
    end_date: date
    product_title: Optional[str] = Field(None, max_length=1000)

    @field_validator("asin", mode="before")
    @classmethod
    def clean_asin(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def date_only(cls, v):
        """Accept timestamps and ISO strings for date columns"""
        if hasattr(v, "date") and callable(v.date):
            return v.date()
        if isinstance(v, str) and "T" in v:
            return v.split("T", 1)[0]
        return v

    @property
    def natural_key(self) -> ParentKey:
        return (self.asin, self.start_date, self.end_date)


class SearchQueryMetricsIn(BaseModel):
    """
    Child record payload.

    Ensures:
    - search_query is present and trimmed
    - count fields are ints (default 0)
    - rate fields are floats (default 0.0)
    - price fields are floats or None
    """

    search_query: str = Field(..., min_length=1, max_length=500)

    search_query_score: float = 0.0
    search_query_volume: int = 0

    total_query_impression_count: int = 0
    asin_impression_count: int = 0
    asin_impression_share: float = 0.0

    total_click_count: int = 0
    total_click_rate: float = 0.0
    asin_click_count: int = 0
    asin_click_share: float = 0.0
    total_median_click_price: Optional[float] = None
    asin_median_click_price: Optional[float] = None
    total_same_day_shipping_click_count: int = 0
    total_one_day_shipping_click_count: int = 0
    total_two_day_shipping_click_count: int = 0

    total_cart_add_count: int = 0
    total_cart_add_rate: float = 0.0
    asin_cart_add_count: int = 0
    asin_cart_add_share: float = 0.0
    total_median_cart_add_price: Optional[float] = None
    asin_median_cart_add_price: Optional[float] = None

    total_purchase_count: int = 0
    total_purchase_rate: float = 0.0
    asin_purchase_count: int = 0
    asin_purchase_share: float = 0.0
    total_median_purchase_price: Optional[float] = None
    asin_median_purchase_price: Optional[float] = None

    @field_validator("search_query", mode="before")
    @classmethod
    def clean_search_query(cls, v):
        if isinstance(v, str):
            v = v.strip()
        return v

    @field_validator(*COUNT_FIELDS, mode="before")
    @classmethod
    def counts_default_to_zero(cls, v):
        return coerce_count(v)

    @field_validator(*RATE_FIELDS, mode="before")
    @classmethod
    def rates_default_to_zero(cls, v):
        return coerce_rate(v)

    @field_validator(*PRICE_FIELDS, mode="before")
    @classmethod
    def prices_or_none(cls, v):
        return coerce_price(v)


class PerformanceRow(BaseModel):
    """One normalized warehouse row: parent identity plus child metrics"""

    parent: AsinPerformanceIn
    metrics: SearchQueryMetricsIn

    @property
    def parent_key(self) -> ParentKey:
        return self.parent.natural_key
