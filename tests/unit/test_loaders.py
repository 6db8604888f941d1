"""
Unit tests for the parent/child performance loader
"""

import pytest
from datetime import date
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy import Select, func, select
from sqlalchemy.exc import OperationalError

from core.exceptions import ErrorCategory, LoadError, RetryableError, StoreConnectionError
from ingestion.loaders.postgres_loader import PerformanceLoader
from models.performance import AsinPerformance, SearchQueryPerformance
from tests.fakes import make_row


async def _count(session, model):
    return (await session.execute(select(func.count()).select_from(model))).scalar()


class TestPerformanceLoader:
    """Parent-then-child upserts against the store"""

    @pytest.mark.asyncio
    async def test_load_batch_writes_parents_then_children(self, db_session, sample_rows):
        loader = PerformanceLoader(db_session, child_batch_size=4)

        result = await loader.load_parent_then_child(sample_rows)

        assert result.rows_received == 12
        assert result.parents_upserted == 4
        assert result.children_upserted == 12
        assert result.child_batches == 3
        assert result.warnings == []
        assert await _count(db_session, AsinPerformance) == 4
        assert await _count(db_session, SearchQueryPerformance) == 12

    @pytest.mark.asyncio
    async def test_loading_same_batch_twice_is_idempotent(self, db_session, sample_rows):
        loader = PerformanceLoader(db_session)

        await loader.load_parent_then_child(sample_rows)
        once = await _count(db_session, SearchQueryPerformance)
        await loader.load_parent_then_child(sample_rows)
        twice = await _count(db_session, SearchQueryPerformance)

        assert once == twice == 12
        assert await _count(db_session, AsinPerformance) == 4

    @pytest.mark.asyncio
    async def test_parent_lookup_reads_only_the_batch_periods(self, db_session, sample_rows):
        loader = PerformanceLoader(db_session)
        await loader.load_parent_then_child(sample_rows)
        week_two = [r for r in sample_rows if r["start_date"] == date(2024, 1, 8)]

        read_back = []
        execute = db_session.execute

        async def recording_execute(statement, *args, **kwargs):
            result = await execute(statement, *args, **kwargs)
            if isinstance(statement, Select):
                rows = result.all()
                read_back.append(len(rows))
                return rows
            return result

        db_session.execute = recording_execute

        result = await loader.load_parent_then_child(week_two)

        # two ASINs of history exist for week one as well; only week two is read
        assert read_back == [2]
        assert result.children_upserted == 6
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_reload_updates_metrics(self, db_session):
        loader = PerformanceLoader(db_session)
        await loader.load_parent_then_child([make_row(asin_click_count=100)])

        await loader.load_parent_then_child([make_row(asin_click_count=250, product_title="Renamed")])

        child = (await db_session.execute(select(SearchQueryPerformance))).scalar_one()
        parent = (await db_session.execute(select(AsinPerformance))).scalar_one()
        await db_session.refresh(child)
        await db_session.refresh(parent)
        assert child.asin_click_count == 250
        assert parent.product_title == "Renamed"

    @pytest.mark.asyncio
    async def test_child_with_unresolvable_parent_is_a_warning(self, db_session):
        loader = PerformanceLoader(db_session)
        rows = [
            make_row(),
            # start after end: parent rejected, its child cannot be resolved
            make_row(asin="B000BROKEN", start_date=date(2024, 2, 7), end_date=date(2024, 2, 1)),
        ]

        result = await loader.load_parent_then_child(rows)

        assert result.children_upserted == 1
        kinds = [w.kind for w in result.warnings]
        assert kinds.count("invalid_parent") == 1
        assert kinds.count("unresolved_parent") == 1
        assert result.rows_dropped == 1
        assert await _count(db_session, SearchQueryPerformance) == 1

    @pytest.mark.asyncio
    async def test_duplicate_child_keys_keep_last_row(self, db_session):
        loader = PerformanceLoader(db_session)
        rows = [make_row(asin_click_count=10), make_row(asin_click_count=20)]

        result = await loader.load_parent_then_child(rows)

        assert result.children_upserted == 1
        assert [w.kind for w in result.warnings] == ["duplicate_key"]
        assert result.rows_dropped == 0
        child = (await db_session.execute(select(SearchQueryPerformance))).scalar_one()
        assert child.asin_click_count == 20

    @pytest.mark.asyncio
    async def test_invalid_rows_are_counted_not_loaded(self, db_session):
        loader = PerformanceLoader(db_session)

        result = await loader.load_parent_then_child([make_row(), make_row(search_query="  ")])

        assert result.children_upserted == 1
        assert [w.kind for w in result.warnings] == ["invalid_row"]
        assert result.rows_dropped == 1

    @pytest.mark.asyncio
    async def test_load_parents_only(self, db_session, sample_rows):
        loader = PerformanceLoader(db_session)

        result = await loader.load_parents(sample_rows)

        assert result.parents_upserted == 4
        assert result.children_upserted == 0
        assert await _count(db_session, SearchQueryPerformance) == 0

    @pytest.mark.asyncio
    async def test_empty_batch(self, db_session):
        loader = PerformanceLoader(db_session)

        result = await loader.load_parent_then_child([])

        assert result.rows_received == 0
        assert result.parents_upserted == 0

    @pytest.mark.asyncio
    async def test_parent_upsert_failure_raises_load_error(self):
        mock_session = AsyncMock()
        mock_session.get_bind = MagicMock(return_value=MagicMock(dialect=MagicMock()))
        mock_session.get_bind.return_value.dialect.name = "postgresql"
        mock_session.execute = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("server closed")))

        loader = PerformanceLoader(mock_session)

        with pytest.raises(LoadError) as exc_info:
            await loader.load_parent_then_child([make_row()])

        assert exc_info.value.context["table_name"] == "asin_performance_data"
        mock_session.rollback.assert_awaited_once()
        mock_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dropped_store_connection_raises_retryable_error(self):
        mock_session = AsyncMock()
        mock_session.get_bind = MagicMock(return_value=MagicMock(dialect=MagicMock()))
        mock_session.get_bind.return_value.dialect.name = "postgresql"
        mock_session.execute = AsyncMock(side_effect=OperationalError(
            "INSERT", {}, Exception("terminating connection"), connection_invalidated=True
        ))

        loader = PerformanceLoader(mock_session)

        with pytest.raises(StoreConnectionError) as exc_info:
            await loader.load_parent_then_child([make_row()])

        assert isinstance(exc_info.value, RetryableError)
        assert exc_info.value.category == ErrorCategory.STORE
        mock_session.rollback.assert_awaited_once()

    def test_child_batch_size_must_be_positive(self):
        with pytest.raises(ValueError):
            PerformanceLoader(AsyncMock(), child_batch_size=0)
