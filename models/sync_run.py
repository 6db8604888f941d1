from sqlalchemy import Column, String, Enum, DateTime, Float, Integer, Text, Index, ForeignKey, Uuid
from core.timeutils import utcnow
from models.base import Base, BigIntPK, JSONType, RunStatus
import uuid


class SyncRun(Base):
    """
    Audit entry for one table refresh.

    Purpose:
    - Append-only history of every table run
    - Duplicate-run guard (at most one RUNNING row per table)
    - Hard-dependency gating (parent success within the current cycle)
    - Health, alerting and metrics export

    Lifecycle:
    - Inserted and committed as RUNNING before the table handler starts
    - Updated exactly once on completion
    """
    __tablename__ = "refresh_audit_log"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    run_id = Column(Uuid, default=uuid.uuid4, unique=True, nullable=False, index=True)
    cycle_id = Column(Uuid, nullable=True, index=True)

    # Table identity
    refresh_config_id = Column(
        BigIntPK, ForeignKey("refresh_config.id", ondelete="SET NULL"), nullable=True, index=True
    )
    table_schema = Column(String(100), nullable=False, default="public")
    table_name = Column(String(200), nullable=False, index=True)

    status = Column(Enum(RunStatus), default=RunStatus.PENDING, nullable=False, index=True)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Statistics
    rows_processed = Column(Integer, default=0)
    rows_inserted = Column(Integer, default=0)
    rows_skipped = Column(Integer, default=0)
    warning_count = Column(Integer, default=0)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)

    # Watermarks, warnings sample, handler-specific metrics
    sync_metadata = Column(JSONType, nullable=True)

    __table_args__ = (
        Index("idx_sync_run_table_status", "table_name", "status"),
        Index("idx_sync_run_table_started", "table_name", "started_at"),
    )

    def complete(
        self,
        status: RunStatus,
        completed_at=None,
        rows_processed: int = 0,
        rows_inserted: int = 0,
        rows_skipped: int = 0,
        warning_count: int = 0,
        error_message=None,
        error_details=None,
        sync_metadata=None
    ):
        """Apply the single completion update"""
        self.status = status
        self.completed_at = completed_at or utcnow()
        self.duration_seconds = (self.completed_at - self.started_at).total_seconds()
        self.rows_processed = rows_processed
        self.rows_inserted = rows_inserted
        self.rows_skipped = rows_skipped
        self.warning_count = warning_count
        self.error_message = error_message
        self.error_details = error_details
        self.sync_metadata = sync_metadata
