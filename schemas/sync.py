"""
Result models shared by the loader, the table handlers and the scheduler
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class DataQualityWarning(BaseModel):
    """
    Non-fatal problem found while loading.

    kind is one of: invalid_row, invalid_parent, unresolved_parent,
    duplicate_key, quality_check.
    """
    kind: str
    message: str
    asin: Optional[str] = None
    search_query: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    # Rows removed from the commit set because of this warning
    dropped: int = 1


class LoadResult(BaseModel):
    rows_received: int = 0
    parents_upserted: int = 0
    children_upserted: int = 0
    child_batches: int = 0
    warnings: List[DataQualityWarning] = Field(default_factory=list)

    @property
    def rows_dropped(self) -> int:
        return sum(w.dropped for w in self.warnings)

    def merge(self, other: "LoadResult") -> "LoadResult":
        return LoadResult(
            rows_received=self.rows_received + other.rows_received,
            parents_upserted=self.parents_upserted + other.parents_upserted,
            children_upserted=self.children_upserted + other.children_upserted,
            child_batches=self.child_batches + other.child_batches,
            warnings=self.warnings + other.warnings,
        )


class TableRunResult(BaseModel):
    """What a table handler reports back to the scheduler"""
    rows_processed: int = 0
    rows_inserted: int = 0
    rows_skipped: int = 0
    warnings: List[DataQualityWarning] = Field(default_factory=list)
    watermark: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TableOutcome(BaseModel):
    """
    One table's result within a cycle.

    status: success, partial_success, failed, skipped (duplicate run guard)
    or blocked (hard dependency not satisfied).
    """
    table_schema: str
    table_name: str
    status: str
    run_id: Optional[UUID] = None
    rows_processed: int = 0
    rows_inserted: int = 0
    rows_skipped: int = 0
    warning_count: int = 0
    duration_seconds: Optional[float] = None
    error: Optional[str] = None
    error_id: Optional[str] = None


class CycleReport(BaseModel):
    cycle_id: UUID
    status: str = "running"  # running, completed, failed
    started_at: datetime
    completed_at: Optional[datetime] = None
    due_tables: List[str] = Field(default_factory=list)
    tables: List[TableOutcome] = Field(default_factory=list)
    error: Optional[str] = None

    def count(self, status: str) -> int:
        return sum(1 for t in self.tables if t.status == status)
