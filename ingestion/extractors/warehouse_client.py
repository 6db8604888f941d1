"""
Source warehouse access with retry logic.

The extractor only talks to the warehouse through the WarehouseClient
contract: page through rows matching a filter, and count them. The
production implementation reads a snapshot table over an SQLAlchemy async
engine and retries transient connection failures with exponential backoff.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, column, func, select, table
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from core.exceptions import (
    ExtractionError,
    PermissionDeniedError,
    WarehouseConnectionError,
)
from schemas.extraction import ExtractionFilter
from schemas.performance import COUNT_FIELDS, PRICE_FIELDS, RATE_FIELDS
import logging

logger = logging.getLogger(__name__)

# Snapshot table layout: identity + temporal columns, then metrics
WAREHOUSE_COLUMNS = (
    "asin",
    "product_title",
    "start_date",
    "end_date",
    "search_query",
) + COUNT_FIELDS + RATE_FIELDS + PRICE_FIELDS

# Stable tie-breakers after the temporal column
ORDER_COLUMNS = ("asin", "search_query", "start_date")


class WarehouseClient(ABC):
    """Read-only view of the source warehouse"""

    @abstractmethod
    async def fetch_rows(
        self,
        row_filter: ExtractionFilter,
        *,
        since: Any = None,
        watermark_column: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """
        Fetch one page of rows.

        Rows are ordered by (watermark_column, asin, search_query, start_date)
        so that offset pagination is deterministic. When ``since`` is given,
        only rows with ``watermark_column >= since`` are returned.
        """
        pass

    @abstractmethod
    async def count_rows(
        self,
        row_filter: ExtractionFilter,
        *,
        since: Any = None,
        watermark_column: Optional[str] = None
    ) -> int:
        """Count rows matching the same criteria as fetch_rows"""
        pass

    async def close(self):
        """Release client resources"""
        return None


class SQLWarehouseClient(WarehouseClient):
    """
    Warehouse client over any SQLAlchemy async engine.

    Attributes:
        table_name: Snapshot table (optionally schema-qualified)
        default_watermark_column: Temporal column used for ordering
        max_retries: Attempts per query for transient errors (default: 3)
        retry_delay: Initial retry delay in seconds (default: 1.0)
    """

    def __init__(
        self,
        url: Optional[str] = None,
        table_name: str = "search_query_performance_snapshots",
        default_watermark_column: str = "end_date",
        engine: Optional[AsyncEngine] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        if engine is None and not url:
            raise ValueError("Either url or engine is required")
        self.engine = engine or create_async_engine(url, poolclass=NullPool)
        self._owns_engine = engine is None

        schema = None
        if "." in table_name:
            schema, table_name = table_name.split(".", 1)
        self.table_name = table_name
        self.table = table(table_name, *[column(c) for c in WAREHOUSE_COLUMNS], schema=schema)
        self.default_watermark_column = default_watermark_column
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def _conditions(self, row_filter: ExtractionFilter, since: Any, watermark_column: str):
        c = self.table.c
        conditions = []
        if row_filter.start_date:
            conditions.append(c.start_date >= row_filter.start_date)
        if row_filter.end_date:
            conditions.append(c.end_date <= row_filter.end_date)
        if row_filter.asins:
            conditions.append(c.asin.in_(row_filter.asins))
        if row_filter.search_queries:
            conditions.append(c.search_query.in_(row_filter.search_queries))
        if row_filter.min_impressions is not None:
            conditions.append(c.asin_impression_count >= row_filter.min_impressions)
        if row_filter.min_clicks is not None:
            conditions.append(c.asin_click_count >= row_filter.min_clicks)
        if row_filter.min_purchases is not None:
            conditions.append(c.asin_purchase_count >= row_filter.min_purchases)
        if since is not None:
            conditions.append(c[watermark_column] >= since)
        return conditions

    async def fetch_rows(
        self,
        row_filter: ExtractionFilter,
        *,
        since: Any = None,
        watermark_column: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        watermark_column = watermark_column or self.default_watermark_column
        c = self.table.c

        stmt = select(self.table).where(
            and_(*self._conditions(row_filter, since, watermark_column))
        ).order_by(c[watermark_column], *[c[name] for name in ORDER_COLUMNS])

        if row_filter.max_results is not None:
            # max_results caps the whole result set, not a page
            remaining = row_filter.max_results - offset
            if remaining <= 0:
                return []
            limit = min(limit, remaining) if limit else remaining
        if limit:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)

        result = await self._execute(stmt, offset=offset, limit=limit)
        return [dict(row._mapping) for row in result]

    async def count_rows(
        self,
        row_filter: ExtractionFilter,
        *,
        since: Any = None,
        watermark_column: Optional[str] = None
    ) -> int:
        watermark_column = watermark_column or self.default_watermark_column
        stmt = select(func.count()).select_from(self.table).where(
            and_(*self._conditions(row_filter, since, watermark_column))
        )
        rows = await self._execute(stmt)
        total = int(rows[0][0] or 0) if rows else 0
        if row_filter.max_results is not None:
            total = min(total, row_filter.max_results)
        return total

    async def _execute(self, stmt, **page):
        """
        Execute a read with exponential backoff on connection errors.

        Raises:
            PermissionDeniedError: The warehouse refused access (not retried)
            WarehouseConnectionError: Connection still failing after max_retries
            ExtractionError: Any other database error
        """
        for attempt in range(self.max_retries):
            try:
                async with self.engine.connect() as conn:
                    result = await conn.execute(stmt)
                    return result.fetchall()
            except (OperationalError, DBAPIError) as e:
                text_ = str(e).lower()
                if "permission denied" in text_ or "authentication" in text_:
                    raise PermissionDeniedError(
                        f"Warehouse access denied for {self.table_name}",
                        context={"table": self.table_name, **page},
                        original_exception=e
                    )
                if not isinstance(e, OperationalError) and not e.connection_invalidated:
                    raise ExtractionError(
                        f"Warehouse query failed for {self.table_name}",
                        context={"table": self.table_name, **page},
                        original_exception=e
                    )
                if attempt < self.max_retries - 1:
                    delay = self.retry_delay * (2 ** attempt)  # Exponential backoff
                    logger.warning(
                        f"Warehouse connection error. Retrying in {delay} seconds "
                        f"(attempt {attempt + 1}/{self.max_retries})"
                    )
                    await asyncio.sleep(delay)
                    continue
                raise WarehouseConnectionError(
                    f"Warehouse unreachable after {self.max_retries} retries",
                    context={"table": self.table_name, "retry_count": attempt + 1, **page},
                    original_exception=e
                )
            except SQLAlchemyError as e:
                raise ExtractionError(
                    f"Warehouse query failed for {self.table_name}",
                    context={"table": self.table_name, **page},
                    original_exception=e
                )

    async def close(self):
        if self._owns_engine:
            await self.engine.dispose()
