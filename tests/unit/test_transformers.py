"""
Unit tests for row normalization
"""

import pytest
from datetime import date, datetime

from pydantic import ValidationError

from ingestion.transformers.normalizer import PerformanceNormalizer
from schemas.performance import coerce_count, coerce_price, coerce_rate
from tests.fakes import make_row


class TestCoercion:

    @pytest.mark.parametrize("value,expected", [(None, 0), ("", 0), ("10.0", 10), (7, 7), ("n/a", 0)])
    def test_coerce_count(self, value, expected):
        assert coerce_count(value) == expected

    @pytest.mark.parametrize("value,expected", [(None, 0.0), ("0.25", 0.25), (float("nan"), 0.0), ("x", 0.0)])
    def test_coerce_rate(self, value, expected):
        assert coerce_rate(value) == expected

    def test_coerce_price_keeps_missing_as_none(self):
        assert coerce_price(None) is None
        assert coerce_price("") is None
        assert coerce_price("12.5") == 12.5


class TestPerformanceNormalizer:

    def test_normalize_splits_parent_and_metrics(self):
        normalizer = PerformanceNormalizer()

        row = normalizer.normalize(make_row(asin=" b000test01 ", search_query="  earbuds  "))

        assert row.parent.asin == "B000TEST01"
        assert row.parent_key == ("B000TEST01", date(2024, 1, 1), date(2024, 1, 7))
        assert row.metrics.search_query == "earbuds"
        assert row.metrics.asin_click_count == 100
        assert row.metrics.total_click_count == 0  # missing -> 0
        assert row.metrics.total_median_purchase_price is None

    def test_normalize_accepts_timestamps_for_dates(self):
        normalizer = PerformanceNormalizer()

        row = normalizer.normalize(make_row(
            start_date=datetime(2024, 1, 1, 0, 0),
            end_date="2024-01-07T00:00:00Z",
        ))

        assert row.parent.start_date == date(2024, 1, 1)
        assert row.parent.end_date == date(2024, 1, 7)

    def test_normalize_rejects_missing_asin(self):
        with pytest.raises(ValidationError):
            PerformanceNormalizer().normalize(make_row(asin=None))

    def test_group_by_parent_and_collect_invalid_rows(self, sample_rows):
        normalizer = PerformanceNormalizer()
        rows = sample_rows + [make_row(search_query=None), make_row(start_date="not a date")]

        batch = normalizer.group(rows)

        assert len(batch.parents) == 4
        assert batch.child_count == 12
        assert [w.kind for w in batch.warnings] == ["invalid_row", "invalid_row"]
        assert batch.warnings[0].details["row_index"] == 12
        assert batch.warnings[0].details["fields"] == ["search_query"]

    def test_group_keeps_latest_title(self):
        batch = PerformanceNormalizer().group([
            make_row(product_title="Old"),
            make_row(search_query="other", product_title="New"),
        ])

        parent = next(iter(batch.parents.values()))
        assert parent.product_title == "New"
