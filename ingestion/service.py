"""
Explicit wiring of the sync engine.

build_service() constructs every collaborator (store, warehouse client,
tracker, scheduler, monitor) from Settings and hands them to each other;
the caller owns the returned SyncService and must close() it.
"""

from typing import Dict, Optional

from core.config import Settings
from core.database import Database
from core.exceptions import ConfigurationError
from ingestion.config_store import RefreshConfigStore
from ingestion.extractors.warehouse_client import SQLWarehouseClient, WarehouseClient
from ingestion.extractors.warehouse_extractor import WarehouseExtractor
from ingestion.runner import SearchQuerySyncRunner, TableHandler
from ingestion.scheduler import RefreshScheduler
from models.performance import AsinPerformance, SearchQueryPerformance
from monitoring.alerting import AlertDispatcher, LogAlertChannel, WebhookAlertChannel
from monitoring.error_tracker import ErrorTracker
from monitoring.state_manager import SyncMonitor
from schemas.sync import CycleReport
import logging

logger = logging.getLogger(__name__)


class SyncService:
    """Container for one wired engine instance"""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        warehouse_client: WarehouseClient,
        extractor: WarehouseExtractor,
        error_tracker: ErrorTracker,
        dispatcher: AlertDispatcher,
        scheduler: RefreshScheduler,
        monitor: SyncMonitor
    ):
        self.settings = settings
        self.database = database
        self.warehouse_client = warehouse_client
        self.extractor = extractor
        self.error_tracker = error_tracker
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.monitor = monitor

    async def initialize(self, seed: bool = True):
        """Create missing tables and, optionally, the default refresh configs"""
        await self.database.create_all()
        if seed:
            async with self.database.session() as session:
                await RefreshConfigStore(session).seed_defaults()

    async def run_cycle(self, now=None) -> CycleReport:
        return await self.scheduler.run_cycle(now)

    def start_scheduler(self):
        self.scheduler.start(self.settings.SCHEDULER_INTERVAL_MINUTES)

    async def close(self):
        self.scheduler.stop()
        await self.warehouse_client.close()
        await self.database.dispose()
        logger.info("Sync service closed")


def default_handlers(database: Database, extractor: WarehouseExtractor, settings: Settings,
                     error_tracker: ErrorTracker) -> Dict[str, TableHandler]:
    """One handler per synchronized table, keyed by table name"""
    return {
        AsinPerformance.__tablename__: SearchQuerySyncRunner(
            database, extractor, settings, load_children=False, error_tracker=error_tracker
        ),
        SearchQueryPerformance.__tablename__: SearchQuerySyncRunner(
            database, extractor, settings, load_children=True, error_tracker=error_tracker
        ),
    }


def build_service(
    settings: Settings,
    database: Optional[Database] = None,
    warehouse_client: Optional[WarehouseClient] = None,
    dispatcher: Optional[AlertDispatcher] = None
) -> SyncService:
    """
    Build a SyncService from settings.

    Raises:
        ConfigurationError: no warehouse client given and WAREHOUSE_URL unset
    """
    if warehouse_client is None:
        if not settings.WAREHOUSE_URL:
            raise ConfigurationError(
                "WAREHOUSE_URL is required to build the sync service",
                context={"setting": "WAREHOUSE_URL"}
            )
        warehouse_client = SQLWarehouseClient(
            url=settings.WAREHOUSE_URL,
            table_name=settings.WAREHOUSE_TABLE,
            default_watermark_column=settings.WAREHOUSE_WATERMARK_COLUMN,
            max_retries=settings.MAX_RETRIES,
        )

    database = database or Database.from_settings(settings)

    if dispatcher is None:
        dispatcher = AlertDispatcher([LogAlertChannel()])
        if settings.ALERT_WEBHOOK_URL:
            dispatcher.register(WebhookAlertChannel(
                settings.ALERT_WEBHOOK_URL,
                timeout=settings.ALERT_WEBHOOK_TIMEOUT,
                max_retries=settings.MAX_RETRIES,
            ))

    error_tracker = ErrorTracker(dispatcher=dispatcher)
    extractor = WarehouseExtractor(
        warehouse_client,
        watermark_column=settings.WAREHOUSE_WATERMARK_COLUMN,
        batch_size=settings.SYNC_PAGE_SIZE,
    )
    scheduler = RefreshScheduler(
        database,
        default_handlers(database, extractor, settings, error_tracker),
        error_tracker,
        settings,
    )
    monitor = SyncMonitor(database, scheduler, error_tracker, dispatcher, settings)

    logger.info(f"Sync service built (environment={settings.ENVIRONMENT}, channels={list(dispatcher.channels)})")
    return SyncService(
        settings=settings,
        database=database,
        warehouse_client=warehouse_client,
        extractor=extractor,
        error_tracker=error_tracker,
        dispatcher=dispatcher,
        scheduler=scheduler,
        monitor=monitor,
    )
