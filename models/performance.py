from sqlalchemy import (
    Column, String, Integer, BigInteger, Date, DateTime, Float, Index, ForeignKey, UniqueConstraint
)
from core.timeutils import utcnow
from models.base import Base, BigIntPK


class AsinPerformance(Base):
    """
    Parent record: one ASIN over one reporting period.

    Natural key: (asin, start_date, end_date). Rows are created and updated
    by the performance loader only.
    """
    __tablename__ = "asin_performance_data"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    asin = Column(String(20), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    product_title = Column(String(1000), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("asin", "start_date", "end_date", name="uq_asin_performance_period"),
        Index("idx_asin_performance_dates", "start_date", "end_date"),
    )


class SearchQueryPerformance(Base):
    """
    Child record: funnel metrics for one search query of a parent period.

    Natural key: (asin_performance_id, search_query). Never written without
    a resolvable parent id.
    """
    __tablename__ = "search_query_performance"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    asin_performance_id = Column(
        BigIntPK,
        ForeignKey("asin_performance_data.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    search_query = Column(String(500), nullable=False)

    # Query-level
    search_query_score = Column(Float, nullable=False, default=0.0)
    search_query_volume = Column(BigInteger, nullable=False, default=0)

    # Impressions
    total_query_impression_count = Column(BigInteger, nullable=False, default=0)
    asin_impression_count = Column(BigInteger, nullable=False, default=0)
    asin_impression_share = Column(Float, nullable=False, default=0.0)

    # Clicks
    total_click_count = Column(BigInteger, nullable=False, default=0)
    total_click_rate = Column(Float, nullable=False, default=0.0)
    asin_click_count = Column(BigInteger, nullable=False, default=0)
    asin_click_share = Column(Float, nullable=False, default=0.0)
    total_median_click_price = Column(Float, nullable=True)
    asin_median_click_price = Column(Float, nullable=True)
    total_same_day_shipping_click_count = Column(BigInteger, nullable=False, default=0)
    total_one_day_shipping_click_count = Column(BigInteger, nullable=False, default=0)
    total_two_day_shipping_click_count = Column(BigInteger, nullable=False, default=0)

    # Cart adds
    total_cart_add_count = Column(BigInteger, nullable=False, default=0)
    total_cart_add_rate = Column(Float, nullable=False, default=0.0)
    asin_cart_add_count = Column(BigInteger, nullable=False, default=0)
    asin_cart_add_share = Column(Float, nullable=False, default=0.0)
    total_median_cart_add_price = Column(Float, nullable=True)
    asin_median_cart_add_price = Column(Float, nullable=True)

    # Purchases
    total_purchase_count = Column(BigInteger, nullable=False, default=0)
    total_purchase_rate = Column(Float, nullable=False, default=0.0)
    asin_purchase_count = Column(BigInteger, nullable=False, default=0)
    asin_purchase_share = Column(Float, nullable=False, default=0.0)
    total_median_purchase_price = Column(Float, nullable=True)
    asin_median_purchase_price = Column(Float, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("asin_performance_id", "search_query", name="uq_search_query_per_parent"),
        Index("idx_search_query_text", "search_query"),
    )
