"""
Refresh configuration store: schedules, due sets and dependency edges
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import ConfigurationError
from core.timeutils import utcnow
from ingestion.dependencies import DependencyGraph
from models.base import DependencyType
from models.refresh_config import RefreshConfig, RefreshDependency
import logging

logger = logging.getLogger(__name__)

# Tables synchronized out of the box (schema, table, frequency hours, priority)
DEFAULT_REFRESH_CONFIGS = [
    {"table_schema": "public", "table_name": "asin_performance_data", "refresh_frequency_hours": 24, "priority": 100},
    {"table_schema": "public", "table_name": "search_query_performance", "refresh_frequency_hours": 24, "priority": 90},
]

DEFAULT_REFRESH_DEPENDENCIES = [
    ("asin_performance_data", "search_query_performance", DependencyType.HARD),
]


class RefreshConfigStore:
    """
    Persisted refresh schedule.

    Reads serve the scheduler (due set, dependency edges); writes are
    limited to schedule timestamps after a successful run and to
    administrative setup/cleanup.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_configs(self, enabled_only: bool = False) -> List[RefreshConfig]:
        stmt = select(RefreshConfig).order_by(RefreshConfig.priority.desc(), RefreshConfig.table_name.asc())
        if enabled_only:
            stmt = stmt.where(RefreshConfig.is_enabled.is_(True))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_config(self, table_name: str, table_schema: str = "public") -> Optional[RefreshConfig]:
        result = await self.db.execute(
            select(RefreshConfig).where(
                RefreshConfig.table_schema == table_schema,
                RefreshConfig.table_name == table_name,
            )
        )
        return result.scalar_one_or_none()

    async def get_due_configs(self, now: Optional[datetime] = None) -> List[RefreshConfig]:
        """
        Enabled configs whose next_refresh_at is at or before now.

        A config that was never scheduled is due. Ordered by priority
        descending, then table name ascending.
        """
        now = now or utcnow()
        result = await self.db.execute(
            select(RefreshConfig)
            .where(
                and_(
                    RefreshConfig.is_enabled.is_(True),
                    or_(
                        RefreshConfig.next_refresh_at.is_(None),
                        RefreshConfig.next_refresh_at <= now,
                    ),
                )
            )
            .order_by(RefreshConfig.priority.desc(), RefreshConfig.table_name.asc())
        )
        return list(result.scalars().all())

    async def list_dependencies(self) -> List[RefreshDependency]:
        result = await self.db.execute(select(RefreshDependency))
        return list(result.scalars().all())

    async def load_graph(self) -> DependencyGraph:
        return DependencyGraph(await self.list_configs(), await self.list_dependencies())

    # ------------------------------------------------------------------
    # Scheduler writes
    # ------------------------------------------------------------------

    async def mark_refreshed(self, config_id: int, refreshed_at: Optional[datetime] = None) -> RefreshConfig:
        """Advance last/next refresh timestamps after a successful run (caller commits)"""
        config = await self.db.get(RefreshConfig, config_id)
        if config is None:
            raise ConfigurationError(
                "Refresh config disappeared during run",
                context={"config_id": config_id}
            )
        config.schedule_after(refreshed_at or utcnow())
        return config

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def upsert_config(
        self,
        table_name: str,
        table_schema: str = "public",
        refresh_frequency_hours: int = 24,
        priority: int = 100,
        is_enabled: bool = True,
        custom_params: Optional[Dict[str, Any]] = None,
        next_refresh_at: Optional[datetime] = None
    ) -> RefreshConfig:
        if refresh_frequency_hours <= 0:
            raise ConfigurationError(
                "refresh_frequency_hours must be positive",
                context={"table_name": table_name, "refresh_frequency_hours": refresh_frequency_hours}
            )

        config = await self.get_config(table_name, table_schema)
        if config is None:
            config = RefreshConfig(table_schema=table_schema, table_name=table_name)
            self.db.add(config)
            logger.info(f"Added refresh config {table_schema}.{table_name}")
        config.refresh_frequency_hours = refresh_frequency_hours
        config.priority = priority
        config.is_enabled = is_enabled
        config.custom_params = custom_params
        if next_refresh_at is not None:
            config.next_refresh_at = next_refresh_at
        await self.db.commit()
        return config

    async def set_enabled(self, table_name: str, enabled: bool, table_schema: str = "public") -> RefreshConfig:
        config = await self.get_config(table_name, table_schema)
        if config is None:
            raise ConfigurationError(
                f"Unknown refresh table {table_schema}.{table_name}",
                context={"table_name": table_name}
            )
        config.is_enabled = enabled
        await self.db.commit()
        return config

    async def remove_config(self, table_name: str, table_schema: str = "public") -> bool:
        config = await self.get_config(table_name, table_schema)
        if config is None:
            return False
        await self.db.execute(
            delete(RefreshDependency).where(
                or_(
                    RefreshDependency.parent_config_id == config.id,
                    RefreshDependency.dependent_config_id == config.id,
                )
            )
        )
        await self.db.delete(config)
        await self.db.commit()
        logger.info(f"Removed refresh config {table_schema}.{table_name}")
        return True

    async def add_dependency(
        self,
        parent_table: str,
        dependent_table: str,
        dependency_type: DependencyType = DependencyType.HARD,
        table_schema: str = "public"
    ) -> RefreshDependency:
        """
        Add (or retype) an edge parent -> dependent.

        Raises:
            ConfigurationError: unknown table or self-dependency
            CyclicDependencyError: the edge would close a cycle
        """
        parent = await self.get_config(parent_table, table_schema)
        dependent = await self.get_config(dependent_table, table_schema)
        if parent is None or dependent is None:
            raise ConfigurationError(
                "Dependency references an unknown table",
                context={"parent": parent_table, "dependent": dependent_table}
            )
        if parent.id == dependent.id:
            raise ConfigurationError(
                "A table cannot depend on itself",
                context={"table_name": parent_table}
            )

        existing = (await self.db.execute(
            select(RefreshDependency).where(
                RefreshDependency.parent_config_id == parent.id,
                RefreshDependency.dependent_config_id == dependent.id,
            )
        )).scalar_one_or_none()

        edge = existing or RefreshDependency(parent_config_id=parent.id, dependent_config_id=dependent.id)
        edge.dependency_type = dependency_type

        edges = [e for e in await self.list_dependencies() if e is not existing] + [edge]
        DependencyGraph(await self.list_configs(), edges).validate()

        if existing is None:
            self.db.add(edge)
        await self.db.commit()
        logger.info(f"Dependency {parent_table} -> {dependent_table} ({dependency_type.value})")
        return edge

    async def remove_dependency(self, parent_table: str, dependent_table: str, table_schema: str = "public") -> bool:
        parent = await self.get_config(parent_table, table_schema)
        dependent = await self.get_config(dependent_table, table_schema)
        if parent is None or dependent is None:
            return False
        result = await self.db.execute(
            delete(RefreshDependency).where(
                RefreshDependency.parent_config_id == parent.id,
                RefreshDependency.dependent_config_id == dependent.id,
            )
        )
        await self.db.commit()
        return result.rowcount > 0

    async def cleanup_configs(self, valid_tables: Iterable[str]) -> List[str]:
        """
        Remove configs for tables that no longer exist.

        Returns:
            Qualified names of removed configs
        """
        valid = set(valid_tables)
        removed = []
        for config in await self.list_configs():
            if config.table_name not in valid and config.qualified_name not in valid:
                await self.remove_config(config.table_name, config.table_schema)
                removed.append(config.qualified_name)
        if removed:
            logger.info(f"Config cleanup removed {len(removed)} configs: {removed}")
        return removed

    async def seed_defaults(self) -> List[RefreshConfig]:
        """Create the default configs and dependencies if missing"""
        configs = []
        for entry in DEFAULT_REFRESH_CONFIGS:
            config = await self.get_config(entry["table_name"], entry["table_schema"])
            if config is None:
                config = await self.upsert_config(**entry)
            configs.append(config)
        for parent, dependent, kind in DEFAULT_REFRESH_DEPENDENCIES:
            await self.add_dependency(parent, dependent, kind)
        return configs
