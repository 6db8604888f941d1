"""
Sync state, health, history and alerting.

SyncMonitor is read-mostly: it observes the scheduler, the audit log and
the error tracker, and only writes when asked to clean up old history.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select

from core.config import Settings
from core.database import Database
from core.timeutils import utcnow
from ingestion.config_store import RefreshConfigStore
from ingestion.scheduler import RefreshScheduler
from models.base import RunStatus
from models.refresh_config import RefreshConfig
from models.sync_run import SyncRun
from monitoring.alerting import Alert, AlertDispatcher, AlertSeverity
from monitoring.error_tracker import ErrorSeverity, ErrorTracker
from schemas.monitoring import (
    HealthCheck,
    HealthReport,
    HistoryPage,
    PipelineState,
    Recommendation,
    SyncRunRecord,
    TableStaleness,
)
import logging

logger = logging.getLogger(__name__)

HEALTH_THRESHOLDS = {
    "critical_tables_max": 0,    # open critical errors tolerated
    "stale_percentage_max": 20,  # % of enabled tables allowed to be stale
    "failure_rate_max": 10,      # % of failed runs in the lookback window
}

CHECK_SCORES = {"pass": 100, "warn": 70, "fail": 0}


def staleness_score(hours_since_refresh: Optional[float], frequency_hours: float) -> float:
    """
    0-100 freshness of a table: 100 right after a refresh, 0 once a full
    refresh period has elapsed (or when it was never refreshed).
    """
    if hours_since_refresh is None or frequency_hours <= 0:
        return 0.0
    score = 100.0 - 100.0 * hours_since_refresh / frequency_hours
    return max(0.0, min(100.0, score))


def health_status(score: float) -> str:
    if score >= 90:
        return "healthy"
    if score >= 60:
        return "degraded"
    return "critical"


class SyncMonitor:
    """Health, history and alerts over the refresh pipeline"""

    def __init__(
        self,
        database: Database,
        scheduler: RefreshScheduler,
        error_tracker: ErrorTracker,
        dispatcher: Optional[AlertDispatcher] = None,
        settings: Optional[Settings] = None
    ):
        self.database = database
        self.scheduler = scheduler
        self.error_tracker = error_tracker
        self.dispatcher = dispatcher
        self.settings = settings or scheduler.settings

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def get_state(self) -> PipelineState:
        return PipelineState(
            status=self.scheduler.status,
            scheduler_running=self.scheduler.is_running,
            current_cycle=self.scheduler.current_cycle,
            last_cycle=self.scheduler.last_cycle,
            tables=dict(self.scheduler.table_outcomes),
        )

    def _is_stale(self, config: RefreshConfig, now: datetime) -> bool:
        hours = config.hours_since_refresh(now)
        if hours is None:
            return True
        return hours > config.refresh_frequency_hours * self.settings.ALERT_STALENESS_FACTOR

    async def _recent_runs(self, session, since: datetime) -> List[SyncRun]:
        result = await session.execute(
            select(SyncRun)
            .where(SyncRun.started_at >= since)
            .order_by(SyncRun.started_at.desc())
        )
        return list(result.scalars().all())

    async def _long_running(self, session, now: datetime) -> List[SyncRun]:
        cutoff = now - timedelta(minutes=self.settings.ALERT_MAX_EXECUTION_MINUTES)
        result = await session.execute(
            select(SyncRun).where(SyncRun.status == RunStatus.RUNNING, SyncRun.started_at < cutoff)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def get_health(self, now: Optional[datetime] = None) -> HealthReport:
        """
        Score the pipeline from independent checks.

        Checks: database connectivity, failure rate over the lookback
        window, share of stale tables, open critical errors, runs exceeding
        the execution limit. Each check scores pass=100, warn=70, fail=0 and
        the health score is their rounded mean.
        """
        now = now or utcnow()
        checks: List[HealthCheck] = []

        if not await self.database.ping():
            checks.append(HealthCheck(
                name="database_connectivity",
                status="fail",
                message="Database connection failed",
            ))
            return HealthReport(
                status="critical",
                health_score=0,
                checks=checks,
                recommendations=[Recommendation(
                    type="investigate_failures",
                    priority="critical",
                    message="Restore connectivity to the operational store",
                    checks=["database_connectivity"],
                )],
                thresholds=HEALTH_THRESHOLDS,
                timestamp=now,
            )
        checks.append(HealthCheck(
            name="database_connectivity",
            status="pass",
            message="Database connection successful",
        ))

        lookback = now - timedelta(hours=self.settings.HEALTH_LOOKBACK_HOURS)
        async with self.database.session() as session:
            configs = await RefreshConfigStore(session).list_configs(enabled_only=True)
            runs = await self._recent_runs(session, lookback)
            long_running = await self._long_running(session, now)

        # ========== Sync activity ==========
        finished = [r for r in runs if r.status != RunStatus.RUNNING]
        failed = [r for r in finished if r.status == RunStatus.FAILED]
        if not finished:
            checks.append(HealthCheck(
                name="sync_activity",
                status="warn",
                message=f"No completed syncs in the last {self.settings.HEALTH_LOOKBACK_HOURS} hours",
            ))
        else:
            failure_rate = len(failed) / len(finished) * 100
            checks.append(HealthCheck(
                name="sync_activity",
                status="fail" if failure_rate > HEALTH_THRESHOLDS["failure_rate_max"] else "pass",
                message=f"Sync failure rate: {failure_rate:.1f}%",
                details={
                    "total_syncs": len(finished),
                    "successful": len(finished) - len(failed),
                    "failed": len(failed),
                    "failure_rate": round(failure_rate, 1),
                },
            ))

        # ========== Staleness ==========
        # runs are newest first; keyed by schema too so same-named tables stay apart
        last_status: Dict[str, str] = {}
        for run in runs:
            last_status.setdefault(f"{run.table_schema}.{run.table_name}", run.status.value)

        tables = []
        for config in configs:
            hours = config.hours_since_refresh(now)
            tables.append(TableStaleness(
                table_name=config.table_name,
                table_schema=config.table_schema,
                is_enabled=config.is_enabled,
                refresh_frequency_hours=config.refresh_frequency_hours,
                last_refresh_at=config.last_refresh_at,
                next_refresh_at=config.next_refresh_at,
                hours_since_refresh=round(hours, 2) if hours is not None else None,
                staleness_score=round(staleness_score(hours, config.refresh_frequency_hours), 1),
                is_stale=self._is_stale(config, now),
                last_status=last_status.get(config.qualified_name),
            ))
        stale = [t.table_name for t in tables if t.is_stale]
        stale_pct = len(stale) / len(tables) * 100 if tables else 0.0
        checks.append(HealthCheck(
            name="stale_tables",
            status="warn" if stale_pct > HEALTH_THRESHOLDS["stale_percentage_max"] else "pass",
            message=f"{len(stale)} stale tables ({stale_pct:.1f}%)",
            details={"stale_tables": stale, "threshold": HEALTH_THRESHOLDS["stale_percentage_max"]},
        ))

        # ========== Critical errors ==========
        critical = self.error_tracker.get_errors(severity=ErrorSeverity.CRITICAL, resolved=False)
        checks.append(HealthCheck(
            name="critical_errors",
            status="fail" if len(critical) > HEALTH_THRESHOLDS["critical_tables_max"] else "pass",
            message=f"{len(critical)} unresolved critical errors",
            details={"error_ids": [e.id for e in critical[:20]]},
        ))

        # ========== Execution time ==========
        checks.append(HealthCheck(
            name="long_running_syncs",
            status="warn" if long_running else "pass",
            message=(
                f"{len(long_running)} runs exceeding {self.settings.ALERT_MAX_EXECUTION_MINUTES} minutes"
                if long_running else "No long-running syncs"
            ),
            details={"tables": [r.table_name for r in long_running]},
        ))

        score = round(sum(CHECK_SCORES[c.status] for c in checks) / len(checks))

        recommendations = []
        if stale:
            recommendations.append(Recommendation(
                type="refresh_stale_tables",
                priority="high",
                message="Trigger refresh for stale tables",
                tables=stale,
            ))
        failed_checks = [c.name for c in checks if c.status == "fail"]
        if failed_checks:
            recommendations.append(Recommendation(
                type="investigate_failures",
                priority="critical",
                message="Investigate and fix failing health checks",
                checks=failed_checks,
            ))
        if long_running:
            recommendations.append(Recommendation(
                type="check_long_running",
                priority="medium",
                message="Inspect runs that exceed the execution limit",
                tables=[r.table_name for r in long_running],
            ))

        return HealthReport(
            status=health_status(score),
            health_score=score,
            checks=checks,
            tables=tables,
            recommendations=recommendations,
            thresholds=HEALTH_THRESHOLDS,
            timestamp=now,
        )

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def get_history(
        self,
        limit: int = 50,
        offset: int = 0,
        table_name: Optional[str] = None
    ) -> HistoryPage:
        """Audit log page, newest first"""
        query = select(SyncRun)
        count_query = select(func.count()).select_from(SyncRun)
        if table_name:
            query = query.where(SyncRun.table_name == table_name)
            count_query = count_query.where(SyncRun.table_name == table_name)

        async with self.database.session() as session:
            total = (await session.execute(count_query)).scalar() or 0
            result = await session.execute(
                query.order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit).offset(offset)
            )
            runs = result.scalars().all()

        return HistoryPage(
            items=[SyncRunRecord.model_validate(run) for run in runs],
            total=total,
            limit=limit,
            offset=offset,
        )

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def check_alerts(self, now: Optional[datetime] = None) -> List[Alert]:
        """
        Evaluate error-rate, execution-time and freshness thresholds.

        Every active alert is dispatched to the registered channels and
        returned.
        """
        now = now or utcnow()
        lookback = now - timedelta(hours=self.settings.HEALTH_LOOKBACK_HOURS)
        max_minutes = self.settings.ALERT_MAX_EXECUTION_MINUTES
        alerts: List[Alert] = []

        async with self.database.session() as session:
            runs = await self._recent_runs(session, lookback)
            long_running = await self._long_running(session, now)
            configs = await RefreshConfigStore(session).list_configs(enabled_only=True)

        finished = [r for r in runs if r.status != RunStatus.RUNNING]
        if finished:
            failed = sum(1 for r in finished if r.status == RunStatus.FAILED)
            rate = failed / len(finished)
            if rate > self.settings.ALERT_ERROR_RATE_THRESHOLD:
                alerts.append(Alert(
                    type="error_rate",
                    severity=AlertSeverity.CRITICAL,
                    message=f"Sync error rate {rate:.1%} exceeds {self.settings.ALERT_ERROR_RATE_THRESHOLD:.1%}",
                    metadata={"failed": failed, "total": len(finished), "error_rate": round(rate, 4)},
                    timestamp=now,
                ))

        for run in long_running:
            minutes = (now - run.started_at).total_seconds() / 60
            alerts.append(Alert(
                type="execution_time",
                severity=AlertSeverity.WARNING,
                message=f"{run.table_name} has been running for {minutes:.0f} minutes",
                table_name=run.table_name,
                metadata={"run_id": str(run.run_id), "minutes": round(minutes, 1)},
                timestamp=now,
            ))
        for run in finished:
            if run.duration_seconds is not None and run.duration_seconds > max_minutes * 60:
                alerts.append(Alert(
                    type="execution_time",
                    severity=AlertSeverity.WARNING,
                    message=f"{run.table_name} took {run.duration_seconds / 60:.0f} minutes",
                    table_name=run.table_name,
                    metadata={"run_id": str(run.run_id), "duration_seconds": run.duration_seconds},
                    timestamp=now,
                ))

        for config in configs:
            reference = config.last_refresh_at or config.created_at
            hours = (now - reference).total_seconds() / 3600.0
            limit_hours = config.refresh_frequency_hours * self.settings.ALERT_STALENESS_FACTOR
            if hours > limit_hours:
                alerts.append(Alert(
                    type="data_freshness",
                    severity=AlertSeverity.WARNING,
                    message=(
                        f"{config.table_name} not refreshed for {hours:.1f} hours "
                        f"(limit {limit_hours:.1f})"
                    ),
                    table_name=config.table_name,
                    metadata={
                        "hours_since_refresh": round(hours, 2),
                        "refresh_frequency_hours": config.refresh_frequency_hours,
                        "never_refreshed": config.last_refresh_at is None,
                    },
                    timestamp=now,
                ))

        if alerts:
            logger.warning(f"{len(alerts)} active alerts")
        if self.dispatcher is not None:
            for alert in alerts:
                await self.dispatcher.dispatch(alert)
        return alerts

    # ------------------------------------------------------------------
    # Metrics & retention
    # ------------------------------------------------------------------

    async def export_metrics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        lookback = now - timedelta(hours=self.settings.HEALTH_LOOKBACK_HOURS)

        async with self.database.session() as session:
            runs = await self._recent_runs(session, lookback)

        by_status = {s.value: 0 for s in RunStatus}
        for run in runs:
            by_status[run.status.value] += 1
        durations = [r.duration_seconds for r in runs if r.duration_seconds is not None]

        return {
            "summary": {
                "runs": len(runs),
                "runs_by_status": by_status,
                "rows_processed": sum(r.rows_processed or 0 for r in runs),
                "rows_inserted": sum(r.rows_inserted or 0 for r in runs),
                "rows_skipped": sum(r.rows_skipped or 0 for r in runs),
                "avg_duration_seconds": round(sum(durations) / len(durations), 2) if durations else None,
                "scheduler_status": self.scheduler.status,
            },
            "errors": self.error_tracker.get_error_summary(now=now).model_dump(mode="json"),
            "alerts": [a.model_dump(mode="json") for a in (self.dispatcher.sent if self.dispatcher else [])],
            "metadata": {
                "exported_at": now.isoformat(),
                "lookback_hours": self.settings.HEALTH_LOOKBACK_HOURS,
                "environment": self.settings.ENVIRONMENT,
            },
        }

    async def cleanup_old_data(self, days_to_keep: Optional[int] = None, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Delete finished audit rows older than days_to_keep and resolved
        tracked errors past the error retention window.
        """
        now = now or utcnow()
        days = self.settings.HISTORY_RETENTION_DAYS if days_to_keep is None else days_to_keep
        cutoff = now - timedelta(days=days)

        async with self.database.session() as session:
            result = await session.execute(
                delete(SyncRun).where(
                    SyncRun.started_at < cutoff,
                    SyncRun.status != RunStatus.RUNNING,
                )
            )
            await session.commit()
        runs_deleted = result.rowcount or 0

        errors_deleted = self.error_tracker.cleanup_old_errors(
            days_to_keep=min(days, self.settings.ERROR_RETENTION_DAYS), now=now
        )
        logger.info(f"Cleanup removed {runs_deleted} sync runs and {errors_deleted} errors older than {days} days")
        return {"sync_runs_deleted": runs_deleted, "errors_deleted": errors_deleted}
