"""
Transform flat warehouse rows into parent/child records with Pydantic validation
"""

from collections import OrderedDict
from typing import Any, Dict, List

from pydantic import ValidationError as PydanticValidationError

from schemas.performance import (
    AsinPerformanceIn,
    ParentKey,
    PerformanceRow,
    SearchQueryMetricsIn,
)
from schemas.sync import DataQualityWarning
import logging

logger = logging.getLogger(__name__)


class NormalizedBatch:
    """Rows grouped by parent natural key, plus the rows that failed"""

    def __init__(self):
        self.parents: "OrderedDict[ParentKey, AsinPerformanceIn]" = OrderedDict()
        self.children: "OrderedDict[ParentKey, List[SearchQueryMetricsIn]]" = OrderedDict()
        self.warnings: List[DataQualityWarning] = []

    def add(self, row: PerformanceRow):
        key = row.parent_key
        existing = self.parents.get(key)
        # Last non-empty title wins for a parent seen several times
        if existing is None or (row.parent.product_title and row.parent.product_title != existing.product_title):
            self.parents[key] = row.parent
        self.children.setdefault(key, []).append(row.metrics)

    @property
    def child_count(self) -> int:
        return sum(len(rows) for rows in self.children.values())


class PerformanceNormalizer:
    """
    Normalize warehouse rows.

    Handles:
    - Field mapping (parent identity vs. child metrics)
    - Type conversion (counts -> int, rates -> float, defaults for missing)
    - Identity validation (rows that cannot be keyed become warnings)
    """

    def normalize(self, record: Dict[str, Any]) -> PerformanceRow:
        """
        Normalize one row.

        Raises:
            pydantic.ValidationError: when the parent identity or the
                search query is missing or malformed
        """
        return PerformanceRow(
            parent=AsinPerformanceIn(
                asin=record.get("asin"),
                start_date=record.get("start_date"),
                end_date=record.get("end_date"),
                product_title=record.get("product_title") or None,
            ),
            metrics=SearchQueryMetricsIn(**{
                k: v for k, v in record.items()
                if k in SearchQueryMetricsIn.model_fields
            }),
        )

    def group(self, records: List[Dict[str, Any]]) -> NormalizedBatch:
        """Normalize records and group them by parent natural key"""
        batch = NormalizedBatch()
        for index, record in enumerate(records):
            try:
                batch.add(self.normalize(record))
            except PydanticValidationError as e:
                fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
                batch.warnings.append(DataQualityWarning(
                    kind="invalid_row",
                    message=f"Row {index} rejected: invalid {', '.join(fields)}",
                    asin=record.get("asin") if isinstance(record.get("asin"), str) else None,
                    search_query=record.get("search_query") if isinstance(record.get("search_query"), str) else None,
                    details={"row_index": index, "fields": fields},
                ))
                logger.debug(f"Normalization failed for row {index}: {e}")
        return batch

