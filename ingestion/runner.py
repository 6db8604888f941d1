# ============================================================================
# File: ingestion/runner.py
# Description: Per-table sync handlers driving extraction and loading
# ============================================================================
"""
Sync Runner - Extract → Load for one refresh table.

This module provides:
- The TableHandler contract the scheduler invokes per due table
- SearchQuerySyncRunner: streamed, watermarked extraction from the
  warehouse into the parent/child performance tables
- classify_run_status: the documented success vs. partial_success rule
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict

from core.config import Settings
from core.database import Database
from core.exceptions import ConfigurationError
from core.timeutils import format_watermark, parse_watermark
from ingestion.checkpoint import ExtractionStateStore
from ingestion.extractors.warehouse_extractor import WarehouseExtractor
from ingestion.loaders.postgres_loader import PerformanceLoader
from models.base import ExtractionStatus, RunStatus
from models.refresh_config import RefreshConfig
from schemas.extraction import ErrorPolicy, ExtractionFilter, ProgressInfo, StreamOptions
from schemas.sync import LoadResult, TableRunResult
import logging

logger = logging.getLogger(__name__)


def classify_run_status(rows_processed: int, rows_skipped: int, warning_threshold: float) -> RunStatus:
    """
    Final status of a run that did not raise.

    The warning ratio is rows_skipped / rows_processed (0 when nothing was
    processed). A ratio strictly above warning_threshold yields
    PARTIAL_SUCCESS, anything else SUCCESS. With the default threshold of
    0.0 a single dropped row makes the run partial.
    """
    if rows_processed <= 0:
        return RunStatus.SUCCESS
    ratio = rows_skipped / rows_processed
    return RunStatus.PARTIAL_SUCCESS if ratio > warning_threshold else RunStatus.SUCCESS


class TableHandler(ABC):
    """Work the scheduler performs for one refresh table"""

    @abstractmethod
    async def run(self, config: RefreshConfig) -> TableRunResult:
        """
        Refresh the table described by config.

        Raise on failure; the scheduler records the failed run.
        """
        pass


class SearchQuerySyncRunner(TableHandler):
    """
    Sync search-query performance snapshots into the operational store.

    Responsibilities:
    - Resume from the pipeline's committed watermark
    - Stream pages from the warehouse and load each page before the next
    - Advance the watermark only after a page is committed
    - Report counts and data-quality warnings to the scheduler

    custom_params understood on the RefreshConfig:
        pipeline_id, watermark_column, error_policy ("abort" | "skip"),
        batch_size, filter (ExtractionFilter fields)
    """

    def __init__(
        self,
        database: Database,
        extractor: WarehouseExtractor,
        settings: Settings,
        load_children: bool = True,
        error_tracker=None
    ):
        self.database = database
        self.extractor = extractor
        self.settings = settings
        self.load_children = load_children
        self.error_tracker = error_tracker

    def _options(self, config: RefreshConfig) -> Dict[str, Any]:
        try:
            return {
                "pipeline_id": config.param("pipeline_id", config.qualified_name),
                "watermark_column": config.param("watermark_column", self.extractor.watermark_column),
                "error_policy": ErrorPolicy(config.param("error_policy", self.settings.STREAM_ERROR_POLICY)),
                "batch_size": int(config.param("batch_size", self.settings.SYNC_PAGE_SIZE)),
                "filter": ExtractionFilter(**config.param("filter", {})),
            }
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid sync parameters for {config.qualified_name}",
                context={"custom_params": config.custom_params},
                original_exception=e
            )

    async def run(self, config: RefreshConfig) -> TableRunResult:
        options = self._options(config)
        pipeline_id = options["pipeline_id"]
        column = options["watermark_column"]
        totals = LoadResult()

        async with self.database.session() as session:
            states = ExtractionStateStore(session)
            loader = PerformanceLoader(session, child_batch_size=self.settings.CHILD_UPSERT_BATCH_SIZE)

            state = await states.start(pipeline_id, column)
            since = parse_watermark(state.last_watermark)
            logger.info(f"Starting sync for {config.qualified_name} (pipeline {pipeline_id}, since {since})")

            async def on_data(rows):
                nonlocal totals
                if self.load_children:
                    result = await loader.load_parent_then_child(rows)
                else:
                    result = await loader.load_parents(rows)
                totals = totals.merge(result)

            async def on_checkpoint(watermark, rows):
                await states.record_batch(pipeline_id, watermark, rows)

            async def on_error(error: Exception, batch_index: int):
                # An aborting page is re-raised and tracked once by the scheduler
                if self.error_tracker is not None and options["error_policy"] == ErrorPolicy.SKIP:
                    await self.error_tracker.track_auto_error(error, {
                        "table_name": config.table_name,
                        "pipeline_id": pipeline_id,
                        "batch": batch_index,
                    })

            def on_progress(progress: ProgressInfo):
                if progress.percentage is not None:
                    logger.info(
                        f"{config.table_name}: {progress.processed}/{progress.total} rows "
                        f"({progress.percentage}%)"
                    )

            try:
                summary = await self.extractor.stream_extraction(
                    options["filter"],
                    StreamOptions(
                        on_data=on_data,
                        error_policy=options["error_policy"],
                        on_progress=on_progress,
                        on_error=on_error,
                        on_checkpoint=on_checkpoint,
                        batch_size=options["batch_size"],
                        since=since,
                        watermark_column=column,
                    )
                )
            except asyncio.CancelledError:
                # Timeout or shutdown; the watermark keeps the last committed page
                await session.rollback()
                await states.finish(pipeline_id, ExtractionStatus.FAILED, "Run cancelled before completion")
                raise
            except Exception as e:
                await session.rollback()
                await states.finish(pipeline_id, ExtractionStatus.FAILED, str(e)[:1000])
                raise

            await states.finish(pipeline_id, ExtractionStatus.COMPLETED)

        rows_processed = summary.rows_processed + summary.rows_skipped
        rows_skipped = totals.rows_dropped + summary.rows_skipped
        rows_inserted = totals.children_upserted if self.load_children else totals.parents_upserted

        warnings_by_kind: Dict[str, int] = {}
        for warning in totals.warnings:
            warnings_by_kind[warning.kind] = warnings_by_kind.get(warning.kind, 0) + 1

        logger.info(
            f"Sync finished for {config.qualified_name}: processed={rows_processed}, "
            f"inserted={rows_inserted}, skipped={rows_skipped}, watermark={summary.committed_watermark}"
        )

        return TableRunResult(
            rows_processed=rows_processed,
            rows_inserted=rows_inserted,
            rows_skipped=rows_skipped,
            warnings=totals.warnings,
            watermark=format_watermark(summary.committed_watermark),
            metadata={
                "pipeline_id": pipeline_id,
                "watermark_before": format_watermark(since),
                "batches": summary.batches,
                "skipped_batches": summary.skipped_batches,
                "parents_upserted": totals.parents_upserted,
                "children_upserted": totals.children_upserted,
                "warnings_by_kind": warnings_by_kind,
                "row_count_check": {
                    "received": totals.rows_received,
                    "committed": rows_inserted if self.load_children else None,
                    "dropped": totals.rows_dropped,
                },
            }
        )
