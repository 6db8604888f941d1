from sqlalchemy import (
    Column, String, Integer, DateTime, Boolean, Enum, Index, ForeignKey, UniqueConstraint
)
from datetime import datetime, timedelta
from typing import Optional
from core.timeutils import utcnow
from models.base import Base, BigIntPK, DependencyType, JSONType


class RefreshConfig(Base):
    """
    Schedule metadata for one synchronized table.

    Purpose:
    - Decide which tables are due for a refresh
    - Order due tables by priority (higher = sooner)
    - Carry per-table overrides (custom_params: timeout, filters, watermark column)

    Design:
    - One row per (table_schema, table_name)
    - Timestamps are only written by the scheduler after a successful run
    - A never-scheduled config (next_refresh_at NULL) is due immediately
    """
    __tablename__ = "refresh_config"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    # Table identity
    table_schema = Column(String(100), nullable=False, default="public")
    table_name = Column(String(200), nullable=False)

    # Schedule
    is_enabled = Column(Boolean, nullable=False, default=True)
    refresh_frequency_hours = Column(Integer, nullable=False, default=24)
    priority = Column(Integer, nullable=False, default=100)
    last_refresh_at = Column(DateTime, nullable=True)
    next_refresh_at = Column(DateTime, nullable=True, index=True)

    custom_params = Column(JSONType, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("table_schema", "table_name", name="uq_refresh_config_table"),
        Index("idx_refresh_config_due", "is_enabled", "next_refresh_at"),
    )

    @property
    def qualified_name(self) -> str:
        return f"{self.table_schema}.{self.table_name}"

    def param(self, key: str, default=None):
        return (self.custom_params or {}).get(key, default)

    def schedule_after(self, refreshed_at: datetime):
        """Record a successful refresh finishing at refreshed_at"""
        self.last_refresh_at = refreshed_at
        self.next_refresh_at = refreshed_at + timedelta(hours=self.refresh_frequency_hours)

    def hours_since_refresh(self, now: datetime) -> Optional[float]:
        if self.last_refresh_at is None:
            return None
        return (now - self.last_refresh_at).total_seconds() / 3600.0


class RefreshDependency(Base):
    """
    Edge from a parent table to a dependent table.

    hard edges gate execution (the parent must succeed in the same cycle),
    soft edges only influence ordering.
    """
    __tablename__ = "refresh_dependencies"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    parent_config_id = Column(
        BigIntPK, ForeignKey("refresh_config.id", ondelete="CASCADE"), nullable=False, index=True
    )
    dependent_config_id = Column(
        BigIntPK, ForeignKey("refresh_config.id", ondelete="CASCADE"), nullable=False, index=True
    )
    dependency_type = Column(Enum(DependencyType), nullable=False, default=DependencyType.HARD)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("parent_config_id", "dependent_config_id", name="uq_refresh_dependency"),
    )
