"""
Load parent/child performance records with upsert logic (idempotency)
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import is_disconnect, upsert_statement
from core.exceptions import LoadError, StoreConnectionError, UpsertError
from core.timeutils import utcnow
from ingestion.transformers.normalizer import NormalizedBatch, PerformanceNormalizer
from models.performance import AsinPerformance, SearchQueryPerformance
from schemas.performance import AsinPerformanceIn, ParentKey, SearchQueryMetricsIn
from schemas.sync import DataQualityWarning, LoadResult
import logging

logger = logging.getLogger(__name__)

PARENT_CONFLICT_KEY = ["asin", "start_date", "end_date"]
CHILD_CONFLICT_KEY = ["asin_performance_id", "search_query"]

# Parent rows per INSERT statement
PARENT_UPSERT_BATCH_SIZE = 500


class PerformanceLoader:
    """
    Load warehouse rows into asin_performance_data (parent) and
    search_query_performance (child) with idempotent upserts.

    Ensures:
    - Parents are committed before any child that references them
    - Children are only written with a parent id read back from the store
    - No duplicate rows on repeated runs (ON CONFLICT merge-update)
    - Child transactions are bounded by child_batch_size
    """

    def __init__(
        self,
        db_session: AsyncSession,
        child_batch_size: int = 1000,
        normalizer: Optional[PerformanceNormalizer] = None
    ):
        if child_batch_size <= 0:
            raise ValueError("child_batch_size must be positive")
        self.db = db_session
        self.child_batch_size = child_batch_size
        self.normalizer = normalizer or PerformanceNormalizer()

    async def load_parent_then_child(self, rows: List[Dict[str, Any]]) -> LoadResult:
        """
        Load one extracted batch.

        Steps:
        1. Normalize rows and group them by parent natural key
        2. Upsert valid parents, then commit
        3. Re-read committed parents to build natural key -> id lookup
        4. Drop children whose parent is not in the lookup (warning)
        5. De-duplicate children on (parent id, search query)
        6. Upsert children in sub-batches, committing each

        Returns:
            LoadResult with counts and data-quality warnings

        Raises:
            LoadError: parent upsert or lookup failed (nothing committed for children)
            UpsertError: a child sub-batch failed (earlier sub-batches stay committed)
            StoreConnectionError: the store connection dropped during any of the above
        """
        result = LoadResult(rows_received=len(rows))
        if not rows:
            return result

        batch = self.normalizer.group(rows)
        result.warnings.extend(batch.warnings)

        valid_parents = self._valid_parents(batch, result)
        result.parents_upserted = await self._upsert_parents(valid_parents)

        lookup = await self._parent_lookup(batch.parents.keys())
        children = self._resolve_children(batch, lookup, result)

        upserted, batches = await self._upsert_children(children)
        result.children_upserted = upserted
        result.child_batches = batches

        logger.info(
            f"Loaded batch: {result.rows_received} rows, {result.parents_upserted} parents, "
            f"{result.children_upserted} children in {batches} sub-batches, "
            f"{len(result.warnings)} warnings"
        )
        return result

    async def load_parents(self, rows: List[Dict[str, Any]]) -> LoadResult:
        """Upsert only the parent records of a batch"""
        result = LoadResult(rows_received=len(rows))
        if not rows:
            return result
        batch = self.normalizer.group(rows)
        result.warnings.extend(batch.warnings)
        result.parents_upserted = await self._upsert_parents(self._valid_parents(batch, result))
        return result

    def _valid_parents(self, batch: NormalizedBatch, result: LoadResult) -> List[AsinPerformanceIn]:
        parents = []
        for key, parent in batch.parents.items():
            if parent.start_date > parent.end_date:
                result.warnings.append(DataQualityWarning(
                    kind="invalid_parent",
                    message=f"Parent {parent.asin} has start_date after end_date",
                    asin=parent.asin,
                    details={"start_date": str(parent.start_date), "end_date": str(parent.end_date)},
                    dropped=0,
                ))
                continue
            parents.append(parent)
        return parents

    async def _upsert_parents(self, parents: List[AsinPerformanceIn]) -> int:
        if not parents:
            return 0

        now = utcnow()
        try:
            for i in range(0, len(parents), PARENT_UPSERT_BATCH_SIZE):
                chunk = parents[i:i + PARENT_UPSERT_BATCH_SIZE]
                stmt = upsert_statement(self.db, AsinPerformance).values([
                    {**p.model_dump(), "created_at": now, "updated_at": now} for p in chunk
                ])
                stmt = stmt.on_conflict_do_update(
                    index_elements=PARENT_CONFLICT_KEY,
                    set_={
                        "product_title": stmt.excluded.product_title,
                        "updated_at": stmt.excluded.updated_at,
                    }
                )
                await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            error_cls = StoreConnectionError if is_disconnect(e) else LoadError
            raise error_cls(
                "Failed to upsert parent records",
                context={
                    "table_name": AsinPerformance.__tablename__,
                    "operation": "UPSERT",
                    "records": len(parents),
                },
                original_exception=e
            )
        return len(parents)

    async def _parent_lookup(self, keys: Iterable[ParentKey]) -> Dict[ParentKey, int]:
        """Read back committed parent ids for the given natural keys, bounded to the batch's periods"""
        wanted = set(keys)
        if not wanted:
            return {}

        asins = sorted({k[0] for k in wanted})
        earliest = min(k[1] for k in wanted)
        latest = max(k[2] for k in wanted)
        lookup: Dict[ParentKey, int] = {}
        try:
            result = await self.db.execute(
                select(
                    AsinPerformance.id,
                    AsinPerformance.asin,
                    AsinPerformance.start_date,
                    AsinPerformance.end_date,
                ).where(
                    AsinPerformance.asin.in_(asins),
                    AsinPerformance.start_date >= earliest,
                    AsinPerformance.end_date <= latest,
                )
            )
        except SQLAlchemyError as e:
            error_cls = StoreConnectionError if is_disconnect(e) else LoadError
            raise error_cls(
                "Failed to read back parent ids",
                context={"table_name": AsinPerformance.__tablename__, "operation": "SELECT"},
                original_exception=e
            )
        for row in result:
            key = (row.asin, row.start_date, row.end_date)
            if key in wanted:
                lookup[key] = row.id
        return lookup

    def _resolve_children(
        self,
        batch: NormalizedBatch,
        lookup: Dict[ParentKey, int],
        result: LoadResult
    ) -> List[Tuple[int, SearchQueryMetricsIn]]:
        resolved: Dict[Tuple[int, str], SearchQueryMetricsIn] = {}
        for key, children in batch.children.items():
            parent_id = lookup.get(key)
            if parent_id is None:
                asin, start_date, end_date = key
                for child in children:
                    result.warnings.append(DataQualityWarning(
                        kind="unresolved_parent",
                        message=f"No parent for {asin} {start_date}..{end_date}",
                        asin=asin,
                        search_query=child.search_query,
                        details={"start_date": str(start_date), "end_date": str(end_date)},
                    ))
                continue

            for child in children:
                natural_key = (parent_id, child.search_query)
                if natural_key in resolved:
                    result.warnings.append(DataQualityWarning(
                        kind="duplicate_key",
                        message=f"Duplicate search query '{child.search_query}' for {key[0]}; last row kept",
                        asin=key[0],
                        search_query=child.search_query,
                        dropped=0,
                    ))
                resolved[natural_key] = child

        return [(parent_id, child) for (parent_id, _), child in resolved.items()]

    async def _upsert_children(self, children: List[Tuple[int, SearchQueryMetricsIn]]) -> Tuple[int, int]:
        if not children:
            return 0, 0

        now = utcnow()
        total = 0
        batches = 0
        for i in range(0, len(children), self.child_batch_size):
            chunk = children[i:i + self.child_batch_size]
            values = [
                {**child.model_dump(), "asin_performance_id": parent_id, "created_at": now, "updated_at": now}
                for parent_id, child in chunk
            ]
            stmt = upsert_statement(self.db, SearchQueryPerformance).values(values)
            stmt = stmt.on_conflict_do_update(
                index_elements=CHILD_CONFLICT_KEY,
                set_={
                    name: stmt.excluded[name]
                    for name in SearchQueryMetricsIn.model_fields
                    if name != "search_query"
                } | {"updated_at": stmt.excluded.updated_at}
            )
            try:
                await self.db.execute(stmt)
                await self.db.commit()
            except SQLAlchemyError as e:
                await self.db.rollback()
                error_cls = StoreConnectionError if is_disconnect(e) else UpsertError
                raise error_cls(
                    "Failed to upsert child records",
                    context={
                        "table_name": SearchQueryPerformance.__tablename__,
                        "operation": "UPSERT",
                        "batch_index": batches,
                        "committed_rows": total,
                    },
                    original_exception=e
                )
            total += len(chunk)
            batches += 1
            logger.debug(f"Child sub-batch {batches}: upserted {len(chunk)} rows")
        return total, batches
