"""
Extraction request/response models
"""

import asyncio
import enum
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class ExtractionFilter(BaseModel):
    """
    Filter descriptor applied to every warehouse read.

    All criteria are optional and combined with AND.
    """

    start_date: Optional[date] = None
    end_date: Optional[date] = None
    asins: List[str] = Field(default_factory=list)
    search_queries: List[str] = Field(default_factory=list)
    min_impressions: Optional[int] = Field(None, ge=0)
    min_clicks: Optional[int] = Field(None, ge=0)
    min_purchases: Optional[int] = Field(None, ge=0)
    max_results: Optional[int] = Field(None, gt=0)

    @model_validator(mode="after")
    def check_date_range(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class ExtractionResult(BaseModel):
    data: List[Dict[str, Any]] = Field(default_factory=list)
    record_count: int = 0
    execution_time_ms: float = 0.0
    validation_errors: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IncrementalResult(BaseModel):
    data: List[Dict[str, Any]] = Field(default_factory=list)
    new_watermark: Any = None


class ProgressInfo(BaseModel):
    processed: int
    total: Optional[int] = None
    percentage: Optional[float] = None
    current_batch: int = 0


class ErrorPolicy(str, enum.Enum):
    """What a stream does when a page fails"""
    ABORT = "abort"
    SKIP = "skip"


@dataclass
class StreamOptions:
    """
    Callbacks and knobs for WarehouseExtractor.stream_extraction.

    error_policy has no default: every caller chooses abort or skip.
    on_checkpoint is awaited after each successfully processed page with the
    committed watermark and the number of rows in that page.
    """
    on_data: Callable[[List[Dict[str, Any]]], Awaitable[Any]]
    error_policy: ErrorPolicy
    on_progress: Optional[Callable[[ProgressInfo], Any]] = None
    on_error: Optional[Callable[[Exception, int], Any]] = None
    on_checkpoint: Optional[Callable[[Any, int], Awaitable[Any]]] = None
    batch_size: int = 1000
    since: Any = None
    watermark_column: Optional[str] = None
    cancel_event: Optional[asyncio.Event] = None


class StreamSummary(BaseModel):
    batches: int = 0
    rows_processed: int = 0
    rows_skipped: int = 0
    skipped_batches: List[int] = Field(default_factory=list)
    total: Optional[int] = None
    committed_watermark: Any = None
    cancelled: bool = False
    errors: List[str] = Field(default_factory=list)
