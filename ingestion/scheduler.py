"""
Refresh scheduler: due set, dependency ordering and per-table execution.

A cycle:
1. Validates the dependency graph and the handler registry (configuration
   errors abort the cycle before any table runs)
2. Computes the due set and orders it topologically, then by priority
3. Runs each table once its in-cycle parents have finished, under a
   bounded concurrency limit; a table whose hard parents did not succeed
   in this cycle is reported as blocked
4. Records every run in the audit log and advances the schedule only on
   success or partial success
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from core.config import Settings
from core.database import Database
from core.exceptions import ConfigurationError, RunTimeoutError, SyncException, UnknownHandlerError
from core.result import capture
from core.timeutils import utcnow
from ingestion.config_store import RefreshConfigStore
from ingestion.dependencies import DependencyGraph
from ingestion.runner import TableHandler, classify_run_status
from models.base import RunStatus
from models.refresh_config import RefreshConfig
from models.sync_run import SyncRun
from monitoring.error_tracker import ErrorTracker
from schemas.sync import CycleReport, TableOutcome, TableRunResult
import logging

logger = logging.getLogger(__name__)

# Warnings persisted on the audit row
MAX_WARNINGS_IN_METADATA = 50


class RefreshScheduler:
    """
    Drives refresh cycles over the configured tables.

    Attributes:
        handlers: table_name -> TableHandler
        current_cycle: Report of the cycle in progress (None when idle)
        last_cycle: Report of the last finished cycle
    """

    def __init__(
        self,
        database: Database,
        handlers: Dict[str, TableHandler],
        error_tracker: ErrorTracker,
        settings: Settings
    ):
        self.database = database
        self.handlers = dict(handlers)
        self.error_tracker = error_tracker
        self.settings = settings
        self.current_cycle: Optional[CycleReport] = None
        self.last_cycle: Optional[CycleReport] = None
        self.table_outcomes: Dict[str, TableOutcome] = {}
        self._in_flight: Set[str] = set()
        self._scheduler: Optional[AsyncIOScheduler] = None

    def register_handler(self, table_name: str, handler: TableHandler):
        self.handlers[table_name] = handler

    @property
    def status(self) -> str:
        return "running" if self.current_cycle is not None else "idle"

    @property
    def is_running(self) -> bool:
        """True while periodic cycles are scheduled"""
        return self._scheduler is not None

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        """
        Run one refresh cycle.

        Args:
            now: Reference time for the due computation (defaults to utcnow)

        Returns:
            CycleReport with one TableOutcome per due table

        Raises:
            ConfigurationError: cyclic dependencies or a due table without
                a handler; no table has run when this is raised
        """
        now = now or utcnow()
        cycle_start = utcnow()
        report = CycleReport(cycle_id=uuid.uuid4(), started_at=cycle_start)
        self.current_cycle = report

        try:
            try:
                async with self.database.session() as session:
                    store = RefreshConfigStore(session)
                    graph = await store.load_graph()
                    graph.validate()
                    due = await store.get_due_configs(now)
                self._check_handlers(due)
                ordered = graph.execution_order(due)
            except ConfigurationError as e:
                logger.error(f"Refresh cycle aborted: {e.message}")
                await self.error_tracker.track_auto_error(e, {"cycle_id": str(report.cycle_id)})
                report.status = "failed"
                report.error = e.message
                raise

            report.due_tables = [c.qualified_name for c in ordered]
            logger.info(f"Refresh cycle {report.cycle_id}: {len(ordered)} due tables {report.due_tables}")

            outcomes = await self._run_tables(ordered, graph, cycle_start, report.cycle_id)
            report.tables = [outcomes[c.id] for c in ordered]
            report.status = "completed"
            logger.info(
                f"Refresh cycle {report.cycle_id} completed: "
                f"success={report.count('success')}, partial={report.count('partial_success')}, "
                f"failed={report.count('failed')}, blocked={report.count('blocked')}, "
                f"skipped={report.count('skipped')}"
            )
            return report
        finally:
            report.completed_at = utcnow()
            self.last_cycle = report
            self.current_cycle = None

    def _check_handlers(self, due: List[RefreshConfig]):
        missing = [c.table_name for c in due if c.table_name not in self.handlers]
        if missing:
            raise UnknownHandlerError(
                "No sync handler registered for due tables",
                context={"tables": missing}
            )

    async def _run_tables(
        self,
        ordered: List[RefreshConfig],
        graph: DependencyGraph,
        cycle_start: datetime,
        cycle_id: uuid.UUID
    ) -> Dict[int, TableOutcome]:
        due_ids = {c.id for c in ordered}
        finished: Dict[int, asyncio.Event] = {c.id: asyncio.Event() for c in ordered}
        semaphore = asyncio.Semaphore(max(1, self.settings.MAX_CONCURRENT_REFRESHES))
        outcomes: Dict[int, TableOutcome] = {}

        async def run_one(config: RefreshConfig):
            try:
                # Wait for in-cycle parents (hard and soft) without holding a slot
                for parent_id in graph.parents(config.id):
                    if parent_id in due_ids:
                        await finished[parent_id].wait()

                result = await capture(self._gated_run, config, graph, cycle_start, cycle_id, semaphore)
                if result.ok:
                    outcomes[config.id] = result.value
                else:
                    # Store unreachable before or after the handler ran
                    logger.error(f"Refresh of {config.qualified_name} could not be recorded: {result.error}")
                    detail = await self.error_tracker.track_auto_error(
                        result.error, {"table_name": config.table_name, "table_schema": config.table_schema}
                    )
                    outcomes[config.id] = TableOutcome(
                        table_schema=config.table_schema,
                        table_name=config.table_name,
                        status=RunStatus.FAILED.value,
                        error=str(result.error),
                        error_id=detail.id,
                    )
            finally:
                finished[config.id].set()

        await asyncio.gather(*(run_one(c) for c in ordered))
        for outcome in outcomes.values():
            self.table_outcomes[f"{outcome.table_schema}.{outcome.table_name}"] = outcome
        return outcomes

    async def _gated_run(
        self,
        config: RefreshConfig,
        graph: DependencyGraph,
        cycle_start: datetime,
        cycle_id: uuid.UUID,
        semaphore: asyncio.Semaphore
    ) -> TableOutcome:
        unmet = await self._unmet_hard_parents(config, graph, cycle_start)
        if unmet:
            logger.warning(
                f"Skipping {config.qualified_name}: hard dependencies without a "
                f"successful run this cycle: {unmet}"
            )
            return TableOutcome(
                table_schema=config.table_schema,
                table_name=config.table_name,
                status="blocked",
                error=f"Unmet hard dependencies: {', '.join(unmet)}",
            )
        async with semaphore:
            return await self._run_table(config, cycle_id)

    async def _unmet_hard_parents(
        self,
        config: RefreshConfig,
        graph: DependencyGraph,
        cycle_start: datetime
    ) -> List[str]:
        hard = graph.hard_parents(config.id)
        if not hard:
            return []
        async with self.database.session() as session:
            result = await session.execute(
                select(SyncRun.refresh_config_id).where(
                    SyncRun.refresh_config_id.in_(hard),
                    SyncRun.status.in_([RunStatus.SUCCESS, RunStatus.PARTIAL_SUCCESS]),
                    SyncRun.started_at >= cycle_start,
                )
            )
            satisfied = {row[0] for row in result}
        return [graph.configs[p].qualified_name for p in hard if p not in satisfied]

    async def _run_table(self, config: RefreshConfig, cycle_id: uuid.UUID) -> TableOutcome:
        """Run one table: guard, audit row, handler under timeout, finalize"""
        key = config.qualified_name
        if key in self._in_flight:
            logger.warning(f"Refresh already in progress for {key}; skipping")
            return TableOutcome(table_schema=config.table_schema, table_name=config.table_name, status="skipped")

        self._in_flight.add(key)
        try:
            timeout = float(config.param("timeout_seconds", self.settings.TABLE_RUN_TIMEOUT_SECONDS))
            async with self.database.session() as session:
                running = await self._live_running_run(session, config, timeout)
                if running is not None:
                    logger.warning(f"Refresh already running for {key} (run {running}); skipping")
                    return TableOutcome(
                        table_schema=config.table_schema,
                        table_name=config.table_name,
                        status="skipped",
                        error=f"Run {running} still in progress",
                    )

                run = SyncRun(
                    run_id=uuid.uuid4(),
                    cycle_id=cycle_id,
                    refresh_config_id=config.id,
                    table_schema=config.table_schema,
                    table_name=config.table_name,
                    status=RunStatus.RUNNING,
                    started_at=utcnow(),
                )
                session.add(run)
                await session.commit()
                run_pk, run_id = run.id, run.run_id

            handler = self.handlers[config.table_name]
            logger.info(f"Running {key} (run {run_id}, timeout {timeout}s)")

            outcome = await capture(asyncio.wait_for, handler.run(config), timeout)
            error = outcome.error
            if isinstance(error, asyncio.TimeoutError):
                error = RunTimeoutError(
                    f"Refresh of {key} timed out after {timeout} seconds",
                    context={"table_name": config.table_name, "timeout_seconds": timeout}
                )

            if outcome.ok:
                return await self._finalize_success(config, run_pk, outcome.value)
            return await self._finalize_failure(config, run_pk, error)
        finally:
            self._in_flight.discard(key)

    async def _live_running_run(self, session, config: RefreshConfig, timeout: float) -> Optional[uuid.UUID]:
        """
        Run id of a RUNNING audit row for this table that may still be alive.

        A RUNNING row older than the table's timeout plus
        ORPHANED_RUN_GRACE_SECONDS outlived any run that could own it (process
        crash, or the store failing while the run was being recorded). Such
        rows are closed as failed and no longer block the table.
        """
        result = await session.execute(
            select(SyncRun).where(
                SyncRun.table_schema == config.table_schema,
                SyncRun.table_name == config.table_name,
                SyncRun.status == RunStatus.RUNNING,
            ).order_by(SyncRun.started_at)
        )
        stale_before = utcnow() - timedelta(seconds=timeout + self.settings.ORPHANED_RUN_GRACE_SECONDS)
        live = None
        reaped = 0
        for run in result.scalars().all():
            if run.started_at >= stale_before:
                live = live or run.run_id
                continue
            error = RunTimeoutError(
                f"Run {run.run_id} of {config.qualified_name} was abandoned while running",
                context={"table_name": config.table_name, "run_id": str(run.run_id), "timeout_seconds": timeout}
            )
            detail = await self.error_tracker.track_auto_error(error, {
                "table_name": config.table_name,
                "table_schema": config.table_schema,
                "run_pk": run.id,
            })
            run.complete(
                RunStatus.FAILED,
                error_message=error.message,
                error_details={**error.to_dict(), "error_id": detail.id, "category": detail.category.value},
            )
            reaped += 1
        if reaped:
            await session.commit()
            logger.warning(f"Closed {reaped} abandoned RUNNING run(s) for {config.qualified_name}")
        return live

    async def _finalize_success(self, config: RefreshConfig, run_pk: int, result: TableRunResult) -> TableOutcome:
        status = classify_run_status(
            result.rows_processed, result.rows_skipped, self.settings.PARTIAL_SUCCESS_WARNING_THRESHOLD
        )
        completed_at = utcnow()
        async with self.database.session() as session:
            run = await session.get(SyncRun, run_pk)
            run.complete(
                status,
                completed_at=completed_at,
                rows_processed=result.rows_processed,
                rows_inserted=result.rows_inserted,
                rows_skipped=result.rows_skipped,
                warning_count=len(result.warnings),
                error_message=(
                    f"{result.rows_skipped} of {result.rows_processed} rows skipped"
                    if status == RunStatus.PARTIAL_SUCCESS else None
                ),
                sync_metadata={
                    **result.metadata,
                    "watermark": result.watermark,
                    "warnings": [
                        w.model_dump(mode="json") for w in result.warnings[:MAX_WARNINGS_IN_METADATA]
                    ],
                },
            )
            await RefreshConfigStore(session).mark_refreshed(config.id, completed_at)
            await session.commit()

        logger.info(
            f"{config.qualified_name} finished with {status.value}: "
            f"{result.rows_inserted} rows written, {result.rows_skipped} skipped"
        )
        return TableOutcome(
            table_schema=config.table_schema,
            table_name=config.table_name,
            status=status.value,
            run_id=run.run_id,
            rows_processed=result.rows_processed,
            rows_inserted=result.rows_inserted,
            rows_skipped=result.rows_skipped,
            warning_count=len(result.warnings),
            duration_seconds=run.duration_seconds,
        )

    async def _finalize_failure(self, config: RefreshConfig, run_pk: int, error: Exception) -> TableOutcome:
        """Mark the run failed; next_refresh_at stays untouched so the table remains due"""
        logger.error(f"Refresh of {config.qualified_name} failed: {error}")
        detail = await self.error_tracker.track_auto_error(error, {
            "table_name": config.table_name,
            "table_schema": config.table_schema,
            "run_pk": run_pk,
        })

        if isinstance(error, SyncException):
            error_details = error.to_dict()
            message = error.message
        else:
            error_details = {"error_type": type(error).__name__, "message": str(error)}
            message = str(error) or type(error).__name__
        error_details["error_id"] = detail.id
        error_details["category"] = detail.category.value

        async with self.database.session() as session:
            run = await session.get(SyncRun, run_pk)
            run.complete(
                RunStatus.FAILED,
                error_message=message[:2000],
                error_details=error_details,
            )
            await session.commit()

        return TableOutcome(
            table_schema=config.table_schema,
            table_name=config.table_name,
            status=RunStatus.FAILED.value,
            run_id=run.run_id,
            duration_seconds=run.duration_seconds,
            error=message,
            error_id=detail.id,
        )

    # ------------------------------------------------------------------
    # Periodic execution
    # ------------------------------------------------------------------

    async def run_scheduled_cycle(self):
        """APScheduler job wrapper: log instead of raising"""
        logger.info("Scheduler: starting refresh cycle")
        try:
            await self.run_cycle()
        except ConfigurationError as e:
            logger.error(f"Scheduler: refresh cycle aborted - {e.message}")
        except Exception as e:
            logger.exception(f"Scheduler: refresh cycle failed - {e}")

    def start(self, interval_minutes: Optional[int] = None):
        """Start periodic cycles on the running event loop"""
        if self._scheduler is not None:
            return
        minutes = interval_minutes or self.settings.SCHEDULER_INTERVAL_MINUTES
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_scheduled_cycle,
            trigger=IntervalTrigger(minutes=minutes),
            id="refresh_cycle",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(f"Refresh scheduler started (every {minutes} minutes)")

    def stop(self):
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Refresh scheduler stopped")
