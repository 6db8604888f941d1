"""
SQLAlchemy ORM models for database tables.

Models:
    base: Declarative Base, portable column types and shared enums
        (RunStatus, DependencyType, ExtractionStatus)
    refresh_config: Per-table schedule (RefreshConfig) and dependency
        edges (RefreshDependency)
    sync_run: Append-only refresh audit log (SyncRun)
    extraction_state: Watermark per incremental pipeline (ExtractionState)
    performance: Parent ASIN periods (AsinPerformance) and their child
        search-query metrics (SearchQueryPerformance)

Database Schema:
    PostgreSQL is the production store (JSONB, ON CONFLICT upserts).
    Column types degrade to portable equivalents on SQLite, which the test
    suite uses.

Usage:
    from models import RefreshConfig, SyncRun
    from models.base import RunStatus

Relationships:
    - RefreshConfig → RefreshDependency (parent/dependent edges)
    - RefreshConfig → SyncRun (one-to-many history)
    - AsinPerformance → SearchQueryPerformance (one-to-many, FK on surrogate id)
"""

from models.base import Base, RunStatus, DependencyType, ExtractionStatus
from models.refresh_config import RefreshConfig, RefreshDependency
from models.sync_run import SyncRun
from models.extraction_state import ExtractionState
from models.performance import AsinPerformance, SearchQueryPerformance

__all__ = [
    "Base",
    "RunStatus",
    "DependencyType",
    "ExtractionStatus",
    "RefreshConfig",
    "RefreshDependency",
    "SyncRun",
    "ExtractionState",
    "AsinPerformance",
    "SearchQueryPerformance",
]
