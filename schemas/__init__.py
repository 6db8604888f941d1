"""
Pydantic schemas for data validation and serialization.

Schemas:
    performance: Warehouse row validation (parent key + child metrics)
    extraction: Extraction filters, results and streaming options
    sync: Load results, data-quality warnings and cycle reports
    monitoring: Pipeline state, health report and run history
    api: HTTP response envelopes

Usage:
    from schemas.performance import AsinPerformanceIn, SearchQueryMetricsIn
    from schemas.extraction import ExtractionFilter, StreamOptions
    from schemas.api import HealthResponse

Validation:
    Metric fields are coerced before validation: missing or unparseable
    counts become 0, rates and shares 0.0, prices None.
    Identifier fields are stripped and the ASIN upper-cased.
"""

__all__ = [
    "AsinPerformanceIn",
    "SearchQueryMetricsIn",
    "PerformanceRow",
    "ExtractionFilter",
    "StreamOptions",
    "LoadResult",
    "CycleReport",
    "HealthReport",
    "HistoryPage",
]
