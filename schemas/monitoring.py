"""
Pydantic models produced by the sync monitor
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from uuid import UUID

from core.timeutils import utcnow
from models.base import RunStatus
from schemas.sync import CycleReport, TableOutcome


# ============================================================================
# State
# ============================================================================

class PipelineState(BaseModel):
    """Scheduler snapshot"""
    status: str  # idle, running
    scheduler_running: bool = False
    current_cycle: Optional[CycleReport] = None
    last_cycle: Optional[CycleReport] = None
    tables: Dict[str, TableOutcome] = Field(default_factory=dict)


# ============================================================================
# Health
# ============================================================================

class HealthCheck(BaseModel):
    name: str
    status: str  # pass, warn, fail
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class TableStaleness(BaseModel):
    table_name: str
    table_schema: str
    is_enabled: bool
    refresh_frequency_hours: int
    last_refresh_at: Optional[datetime] = None
    next_refresh_at: Optional[datetime] = None
    hours_since_refresh: Optional[float] = None
    staleness_score: float
    is_stale: bool
    last_status: Optional[str] = None


class Recommendation(BaseModel):
    type: str
    priority: str
    message: str
    tables: List[str] = Field(default_factory=list)
    checks: List[str] = Field(default_factory=list)


class HealthReport(BaseModel):
    status: str  # healthy, degraded, critical
    health_score: int
    checks: List[HealthCheck]
    tables: List[TableStaleness] = Field(default_factory=list)
    recommendations: List[Recommendation] = Field(default_factory=list)
    thresholds: Dict[str, float] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


# ============================================================================
# History
# ============================================================================

class SyncRunRecord(BaseModel):
    """Audit log row as exposed to operators"""
    run_id: UUID
    cycle_id: Optional[UUID] = None
    table_schema: str
    table_name: str
    status: RunStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    rows_processed: int = 0
    rows_inserted: int = 0
    rows_skipped: int = 0
    warning_count: int = 0
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    sync_metadata: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class HistoryPage(BaseModel):
    items: List[SyncRunRecord]
    total: int
    limit: int
    offset: int
