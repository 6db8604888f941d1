"""
Sync pipeline components for search-query performance data.

Modules:
    runner: Per-table handlers driving extraction and loading
    scheduler: Due-set computation, dependency ordering and cycle execution
    config_store: Persisted refresh schedules and dependency edges
    dependencies: Dependency graph validation and topological ordering
    checkpoint: Watermark persistence per incremental pipeline
    service: Explicit construction of the whole engine

Subpackages:
    extractors: Warehouse client and paged/streamed extraction
    transformers: Row normalization into parent/child records
    loaders: Parent-then-child upserts into the operational store

Architecture:
    A refresh cycle runs in four steps:

    1. Due - enabled configs whose next_refresh_at has passed
    2. Order - topological over dependency edges, then by priority
    3. Run - each table's handler streams pages from the warehouse and
       loads each page (parents committed before children) before the next
    4. Record - one audit row per table run; the schedule advances only
       on success or partial success

Usage:
    from core.config import settings
    from ingestion.service import build_service

    service = build_service(settings)
    await service.initialize()
    report = await service.run_cycle()
    await service.close()

Error Handling:
    Per-table failures are captured at the scheduler boundary and recorded
    as failed runs; configuration errors abort the cycle. All exceptions
    derive from core.exceptions.SyncException.
"""

__all__ = [
    "RefreshScheduler",
    "RefreshConfigStore",
    "SearchQuerySyncRunner",
    "WarehouseExtractor",
    "PerformanceLoader",
    "build_service",
]
