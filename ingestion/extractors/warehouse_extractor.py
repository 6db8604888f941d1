"""
Warehouse extractor: full, incremental (watermarked) and streamed reads.

This module provides:
- Full extraction with optional row validation diagnostics
- Incremental extraction filtered by a watermark column
- Cooperative page-by-page streaming with backpressure, progress
  reporting, explicit abort/skip error policy and batch-boundary
  cancellation
"""

import asyncio
import inspect
import time
from typing import Any, Dict, List, Optional

from core.exceptions import ExtractionError, NetworkError, SyncException
from ingestion.extractors.warehouse_client import WarehouseClient
from schemas.extraction import (
    ErrorPolicy,
    ExtractionFilter,
    ExtractionResult,
    IncrementalResult,
    ProgressInfo,
    StreamOptions,
    StreamSummary,
)
from schemas.performance import SHARE_FIELDS, coerce_count, coerce_rate
import logging

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("asin", "search_query", "start_date", "end_date")

# Funnel stages, widest first
FUNNEL_FIELDS = (
    "asin_impression_count",
    "asin_click_count",
    "asin_cart_add_count",
    "asin_purchase_count",
)


async def _maybe_await(result):
    if inspect.isawaitable(result):
        return await result
    return result


def fetch_error(error: Exception, message: str, context: Dict[str, Any]) -> SyncException:
    """
    Classify an exception raised by a warehouse client read.

    Dropped connections and timeouts become a retryable NetworkError;
    anything else that is not already a SyncException is an ExtractionError.
    """
    if isinstance(error, SyncException):
        return error
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return NetworkError(f"{message}: connection lost", context=context, original_exception=error)
    return ExtractionError(message, context=context, original_exception=error)


def validate_row(row: Dict[str, Any]) -> List[str]:
    """
    Check one warehouse row.

    Returns a list of problems (empty when the row is valid):
    - required identity fields present
    - share values within [0, 1]
    - funnel consistency: impressions >= clicks >= cart adds >= purchases
    """
    problems = []
    for name in REQUIRED_FIELDS:
        if row.get(name) in (None, ""):
            problems.append(f"missing {name}")

    for name in SHARE_FIELDS:
        if name in row and row[name] is not None:
            share = coerce_rate(row[name])
            if share < 0 or share > 1:
                problems.append(f"{name} out of range: {row[name]}")

    counts = [coerce_count(row.get(name)) for name in FUNNEL_FIELDS]
    for wider, narrower, w_name, n_name in zip(counts, counts[1:], FUNNEL_FIELDS, FUNNEL_FIELDS[1:]):
        if narrower > wider:
            problems.append(f"funnel inconsistency: {n_name} ({narrower}) > {w_name} ({wider})")

    return problems


class WarehouseExtractor:
    """
    Pull search-query performance rows from the warehouse.

    Every read is ordered by (watermark column, asin, search_query,
    start_date) through the client, so pages and incremental resumes are
    deterministic.

    Attributes:
        client: Injected WarehouseClient
        watermark_column: Default temporal column for incremental reads
        batch_size: Default page size for streaming
    """

    def __init__(self, client: WarehouseClient, watermark_column: str = "end_date", batch_size: int = 1000):
        self.client = client
        self.watermark_column = watermark_column
        self.batch_size = batch_size

    async def extract_full(
        self,
        row_filter: Optional[ExtractionFilter] = None,
        validate: bool = False,
        strict: bool = False
    ) -> ExtractionResult:
        """
        Return every row matching the filter.

        Args:
            row_filter: Date range, allow-lists and minimum thresholds
            validate: Attach validation diagnostics for each invalid row
            strict: With validate, drop invalid rows from the result

        Raises:
            WarehouseError: When the warehouse read fails
            NetworkError: When the connection drops or times out
        """
        row_filter = row_filter or ExtractionFilter()
        started = time.perf_counter()

        rows = await self._fetch(row_filter, watermark_column=self.watermark_column)

        validation_errors = []
        invalid_rows = 0
        if validate:
            kept = []
            for index, row in enumerate(rows):
                problems = validate_row(row)
                if problems:
                    invalid_rows += 1
                    validation_errors.extend(f"row {index}: {p}" for p in problems)
                    if strict:
                        continue
                kept.append(row)
            rows = kept

        execution_time_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"Full extraction returned {len(rows)} rows in {execution_time_ms:.0f}ms"
            + (f" ({invalid_rows} invalid)" if validate else "")
        )

        return ExtractionResult(
            data=rows,
            record_count=len(rows),
            execution_time_ms=execution_time_ms,
            validation_errors=validation_errors,
            metadata={
                "filter": row_filter.model_dump(mode="json", exclude_none=True),
                "invalid_rows": invalid_rows,
                "strict": strict,
            }
        )

    async def extract_incremental(
        self,
        last_processed_time: Any,
        column: Optional[str] = None,
        row_filter: Optional[ExtractionFilter] = None
    ) -> IncrementalResult:
        """
        Return rows with ``column >= last_processed_time``.

        The new watermark is the maximum observed value of ``column``. An
        empty result returns ``last_processed_time`` unchanged, and the
        watermark never moves backwards.
        """
        column = column or self.watermark_column
        row_filter = row_filter or ExtractionFilter()

        rows = await self._fetch(row_filter, since=last_processed_time, watermark_column=column)

        new_watermark = last_processed_time
        observed = [row[column] for row in rows if row.get(column) is not None]
        if observed:
            latest = max(observed)
            if last_processed_time is None or latest > last_processed_time:
                new_watermark = latest

        logger.info(
            f"Incremental extraction on {column} >= {last_processed_time}: "
            f"{len(rows)} rows, watermark {last_processed_time} -> {new_watermark}"
        )
        return IncrementalResult(data=rows, new_watermark=new_watermark)

    async def estimate_record_count(self, row_filter: ExtractionFilter, since: Any = None, column: Optional[str] = None) -> Optional[int]:
        """Total rows for progress reporting; None when the count fails"""
        try:
            return await self.client.count_rows(
                row_filter, since=since, watermark_column=column or self.watermark_column
            )
        except Exception as e:
            logger.warning(f"Could not estimate record count: {e}")
            return None

    async def stream_extraction(
        self,
        row_filter: Optional[ExtractionFilter],
        options: StreamOptions
    ) -> StreamSummary:
        """
        Stream matching rows page by page.

        Each page is handed to ``options.on_data`` and awaited before the
        next page is requested. A failing page (fetch or processing) is
        reported to ``options.on_error`` and then handled by
        ``options.error_policy``:

        - ABORT: the error is re-raised after on_error
        - SKIP: the page is counted as skipped and the stream continues

        Cancellation through ``options.cancel_event`` is only honoured
        between pages. The committed watermark covers only pages whose
        on_data completed; under SKIP it stops advancing at the first
        skipped page so that skipped rows are read again next time.
        """
        row_filter = row_filter or ExtractionFilter()
        policy = ErrorPolicy(options.error_policy)
        column = options.watermark_column or self.watermark_column
        batch_size = options.batch_size or self.batch_size

        total = await self.estimate_record_count(row_filter, since=options.since, column=column)
        summary = StreamSummary(total=total, committed_watermark=options.since)
        watermark_frozen = False
        offset = 0
        batch_index = 0

        while True:
            if options.cancel_event is not None and options.cancel_event.is_set():
                summary.cancelled = True
                logger.info(f"Stream cancelled before batch {batch_index} ({summary.rows_processed} rows processed)")
                break

            page_size = batch_size
            try:
                rows = await self.client.fetch_rows(
                    row_filter,
                    since=options.since,
                    watermark_column=column,
                    limit=batch_size,
                    offset=offset
                )
            except Exception as e:
                error = fetch_error(e, "Failed to fetch page from warehouse", {"batch": batch_index, "offset": offset})
                await self._handle_page_error(error, batch_index, policy, options, summary)
                # A page we could not read: skip its offset range
                watermark_frozen = True
                summary.skipped_batches.append(batch_index)
                if total is not None:
                    summary.rows_skipped += max(0, min(batch_size, total - offset))
                offset += batch_size
                batch_index += 1
                if total is None or offset >= total:
                    break
                continue

            if not rows:
                break

            try:
                await options.on_data(rows)
            except Exception as e:
                await self._handle_page_error(e, batch_index, policy, options, summary)
                watermark_frozen = True
                summary.skipped_batches.append(batch_index)
                summary.rows_skipped += len(rows)
            else:
                summary.rows_processed += len(rows)
                if not watermark_frozen:
                    page_max = max((r[column] for r in rows if r.get(column) is not None), default=None)
                    if page_max is not None and (
                        summary.committed_watermark is None or page_max > summary.committed_watermark
                    ):
                        summary.committed_watermark = page_max
                    if options.on_checkpoint is not None:
                        await options.on_checkpoint(summary.committed_watermark, len(rows))

            summary.batches += 1
            offset += len(rows)
            batch_index += 1

            if options.on_progress is not None:
                seen = summary.rows_processed + summary.rows_skipped
                percentage = round(100.0 * seen / total, 2) if total else None
                await _maybe_await(options.on_progress(ProgressInfo(
                    processed=seen,
                    total=total,
                    percentage=percentage,
                    current_batch=batch_index,
                )))

            if len(rows) < page_size:
                break

        logger.info(
            f"Stream finished: {summary.batches} batches, {summary.rows_processed} rows processed, "
            f"{summary.rows_skipped} skipped, watermark={summary.committed_watermark}"
        )
        return summary

    async def _handle_page_error(
        self,
        error: Exception,
        batch_index: int,
        policy: ErrorPolicy,
        options: StreamOptions,
        summary: StreamSummary
    ):
        logger.error(f"Stream batch {batch_index} failed: {error}")
        summary.errors.append(f"batch {batch_index}: {error}")
        if options.on_error is not None:
            await _maybe_await(options.on_error(error, batch_index))
        if policy == ErrorPolicy.ABORT:
            raise error

    async def _fetch(self, row_filter: ExtractionFilter, since: Any = None, watermark_column: Optional[str] = None):
        """Read all pages for a non-streamed extraction"""
        rows: List[Dict[str, Any]] = []
        offset = 0
        while True:
            try:
                page = await self.client.fetch_rows(
                    row_filter,
                    since=since,
                    watermark_column=watermark_column,
                    limit=self.batch_size,
                    offset=offset
                )
            except Exception as e:
                raise fetch_error(
                    e, "Unexpected error during extraction", {"offset": offset, "watermark_column": watermark_column}
                )
            rows.extend(page)
            if len(page) < self.batch_size:
                return rows
            offset += len(page)
