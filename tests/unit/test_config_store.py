"""
Unit tests for the refresh config store
"""

import pytest
from datetime import timedelta

from core.exceptions import ConfigurationError, CyclicDependencyError
from core.timeutils import utcnow
from ingestion.config_store import DEFAULT_REFRESH_CONFIGS, RefreshConfigStore
from models.base import DependencyType


class TestDueConfigs:

    @pytest.mark.asyncio
    async def test_disabled_configs_are_never_due(self, db_session):
        store = RefreshConfigStore(db_session)
        now = utcnow()
        await store.upsert_config("never_scheduled", is_enabled=False)
        await store.upsert_config("overdue", is_enabled=False, next_refresh_at=now - timedelta(days=30))
        await store.upsert_config("enabled")

        due = await store.get_due_configs(now)

        assert [c.table_name for c in due] == ["enabled"]

    @pytest.mark.asyncio
    async def test_due_configs_ordered_by_priority(self, db_session):
        store = RefreshConfigStore(db_session)
        await store.upsert_config("b_table", priority=50)
        await store.upsert_config("a_table", priority=90)

        due = await store.get_due_configs()

        assert [c.table_name for c in due] == ["a_table", "b_table"]

    @pytest.mark.asyncio
    async def test_config_refreshed_25_hours_ago_with_daily_frequency_is_due(self, db_session):
        store = RefreshConfigStore(db_session)
        now = utcnow()
        config = await store.upsert_config("daily", refresh_frequency_hours=24)
        await store.mark_refreshed(config.id, now - timedelta(hours=25))
        await db_session.commit()

        due = await store.get_due_configs(now)

        assert [c.table_name for c in due] == ["daily"]

    @pytest.mark.asyncio
    async def test_recently_refreshed_config_is_not_due(self, db_session):
        store = RefreshConfigStore(db_session)
        now = utcnow()
        config = await store.upsert_config("daily", refresh_frequency_hours=24)
        await store.mark_refreshed(config.id, now - timedelta(hours=1))
        await db_session.commit()

        assert await store.get_due_configs(now) == []

    @pytest.mark.asyncio
    async def test_mark_refreshed_schedules_next_run(self, db_session):
        store = RefreshConfigStore(db_session)
        config = await store.upsert_config("six_hourly", refresh_frequency_hours=6)
        refreshed_at = utcnow()

        updated = await store.mark_refreshed(config.id, refreshed_at)

        assert updated.last_refresh_at == refreshed_at
        assert updated.next_refresh_at == refreshed_at + timedelta(hours=6)


class TestAdministration:

    @pytest.mark.asyncio
    async def test_frequency_must_be_positive(self, db_session):
        with pytest.raises(ConfigurationError):
            await RefreshConfigStore(db_session).upsert_config("bad", refresh_frequency_hours=0)

    @pytest.mark.asyncio
    async def test_seed_defaults_is_idempotent(self, db_session):
        store = RefreshConfigStore(db_session)

        await store.seed_defaults()
        await store.seed_defaults()

        configs = await store.list_configs()
        assert [c.table_name for c in configs] == [c["table_name"] for c in DEFAULT_REFRESH_CONFIGS]
        edges = await store.list_dependencies()
        assert len(edges) == 1
        assert edges[0].dependency_type == DependencyType.HARD

    @pytest.mark.asyncio
    async def test_dependency_closing_a_cycle_is_rejected(self, db_session):
        store = RefreshConfigStore(db_session)
        for name in ("a", "b", "c"):
            await store.upsert_config(name)
        await store.add_dependency("a", "b")
        await store.add_dependency("b", "c")

        with pytest.raises(CyclicDependencyError):
            await store.add_dependency("c", "a")

        assert len(await store.list_dependencies()) == 2

    @pytest.mark.asyncio
    async def test_dependency_on_unknown_or_same_table(self, db_session):
        store = RefreshConfigStore(db_session)
        await store.upsert_config("a")

        with pytest.raises(ConfigurationError):
            await store.add_dependency("a", "missing")
        with pytest.raises(ConfigurationError):
            await store.add_dependency("a", "a")

    @pytest.mark.asyncio
    async def test_add_dependency_retypes_existing_edge(self, db_session):
        store = RefreshConfigStore(db_session)
        await store.upsert_config("a")
        await store.upsert_config("b")
        await store.add_dependency("a", "b", DependencyType.HARD)

        await store.add_dependency("a", "b", DependencyType.SOFT)

        edges = await store.list_dependencies()
        assert len(edges) == 1
        assert edges[0].dependency_type == DependencyType.SOFT

    @pytest.mark.asyncio
    async def test_cleanup_removes_configs_and_their_edges(self, db_session):
        store = RefreshConfigStore(db_session)
        await store.seed_defaults()
        await store.upsert_config("legacy_table")

        removed = await store.cleanup_configs(["asin_performance_data", "search_query_performance"])

        assert removed == ["public.legacy_table"]
        assert {c.table_name for c in await store.list_configs()} == {
            "asin_performance_data", "search_query_performance"
        }

    @pytest.mark.asyncio
    async def test_remove_config_drops_edges(self, db_session):
        store = RefreshConfigStore(db_session)
        await store.seed_defaults()

        assert await store.remove_config("search_query_performance") is True
        assert await store.list_dependencies() == []
        assert await store.remove_config("search_query_performance") is False

    @pytest.mark.asyncio
    async def test_set_enabled(self, db_session):
        store = RefreshConfigStore(db_session)
        await store.upsert_config("a")

        await store.set_enabled("a", False)

        assert await store.get_due_configs() == []
        with pytest.raises(ConfigurationError):
            await store.set_enabled("missing", True)
