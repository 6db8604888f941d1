import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from core.exceptions import CyclicDependencyError, RunTimeoutError, UnknownHandlerError
from core.timeutils import utcnow
from ingestion.config_store import RefreshConfigStore
from ingestion.scheduler import RefreshScheduler
from models.base import DependencyType, RunStatus
from models.refresh_config import RefreshConfig, RefreshDependency
from models.sync_run import SyncRun
from monitoring.error_tracker import ErrorTracker
from schemas.sync import TableRunResult
from tests.fakes import StubHandler


async def add_config(database, name, **kwargs):
    async with database.session() as session:
        return await RefreshConfigStore(session).upsert_config(name, **kwargs)


async def add_dependency(database, parent, dependent, kind=DependencyType.HARD):
    async with database.session() as session:
        return await RefreshConfigStore(session).add_dependency(parent, dependent, kind)


async def runs_for(database, table_name):
    async with database.session() as session:
        result = await session.execute(
            select(SyncRun).where(SyncRun.table_name == table_name).order_by(SyncRun.id)
        )
        return list(result.scalars().all())


async def load_config(database, table_name):
    async with database.session() as session:
        return await RefreshConfigStore(session).get_config(table_name)


def make_scheduler(database, settings, handlers):
    return RefreshScheduler(database, handlers, ErrorTracker(), settings)


@pytest.mark.asyncio
async def test_successful_run_advances_schedule(database, test_settings):
    await add_config(database, "orders", refresh_frequency_hours=12)
    handler = StubHandler()
    scheduler = make_scheduler(database, test_settings, {"orders": handler})

    report = await scheduler.run_cycle()

    assert report.status == "completed"
    assert report.due_tables == ["public.orders"]
    assert [t.status for t in report.tables] == ["success"]
    assert handler.calls == ["orders"]

    config = await load_config(database, "orders")
    assert config.last_refresh_at is not None
    assert config.next_refresh_at == config.last_refresh_at + timedelta(hours=12)

    runs = await runs_for(database, "orders")
    assert len(runs) == 1
    assert runs[0].status == RunStatus.SUCCESS
    assert runs[0].rows_inserted == 10
    assert runs[0].cycle_id == report.cycle_id
    assert scheduler.last_cycle is report
    assert scheduler.current_cycle is None


@pytest.mark.asyncio
async def test_refreshed_table_is_not_due_again(database, test_settings):
    await add_config(database, "orders")
    handler = StubHandler()
    scheduler = make_scheduler(database, test_settings, {"orders": handler})

    await scheduler.run_cycle()
    second = await scheduler.run_cycle()
    later = await scheduler.run_cycle(now=utcnow() + timedelta(hours=25))

    assert second.tables == []
    assert [t.status for t in later.tables] == ["success"]
    assert handler.calls == ["orders", "orders"]


@pytest.mark.asyncio
async def test_failure_keeps_table_due_and_tracks_error(database, test_settings):
    await add_config(database, "orders")
    scheduler = make_scheduler(database, test_settings, {"orders": StubHandler(RuntimeError("boom"))})

    report = await scheduler.run_cycle()

    outcome = report.tables[0]
    assert outcome.status == "failed"
    assert outcome.error == "boom"
    assert scheduler.error_tracker.get_error(outcome.error_id) is not None

    config = await load_config(database, "orders")
    assert config.next_refresh_at is None
    assert config.last_refresh_at is None

    runs = await runs_for(database, "orders")
    assert runs[0].status == RunStatus.FAILED
    assert runs[0].error_message == "boom"
    assert runs[0].error_details["error_id"] == outcome.error_id
    assert runs[0].completed_at is not None


@pytest.mark.asyncio
async def test_hard_parent_failure_blocks_dependent(database, test_settings):
    await add_config(database, "parent", priority=100)
    await add_config(database, "child", priority=90)
    await add_dependency(database, "parent", "child")
    child = StubHandler()
    scheduler = make_scheduler(database, test_settings, {
        "parent": StubHandler(RuntimeError("warehouse down")),
        "child": child,
    })

    report = await scheduler.run_cycle()

    statuses = {t.table_name: t.status for t in report.tables}
    assert statuses == {"parent": "failed", "child": "blocked"}
    assert child.calls == []
    assert await runs_for(database, "child") == []
    assert (await load_config(database, "child")).next_refresh_at is None


@pytest.mark.asyncio
async def test_hard_parent_success_lets_dependent_run(database, test_settings):
    await add_config(database, "parent", priority=10)
    await add_config(database, "child", priority=90)
    await add_dependency(database, "parent", "child")
    scheduler = make_scheduler(database, test_settings, {"parent": StubHandler(), "child": StubHandler()})

    report = await scheduler.run_cycle()

    assert [(t.table_name, t.status) for t in report.tables] == [("parent", "success"), ("child", "success")]


@pytest.mark.asyncio
async def test_partial_success_parent_satisfies_hard_dependency(database, test_settings):
    await add_config(database, "parent")
    await add_config(database, "child")
    await add_dependency(database, "parent", "child")
    scheduler = make_scheduler(database, test_settings, {
        "parent": StubHandler(TableRunResult(rows_processed=10, rows_inserted=8, rows_skipped=2)),
        "child": StubHandler(),
    })

    report = await scheduler.run_cycle()

    statuses = {t.table_name: t.status for t in report.tables}
    assert statuses == {"parent": "partial_success", "child": "success"}
    parent_run = (await runs_for(database, "parent"))[0]
    assert parent_run.status == RunStatus.PARTIAL_SUCCESS
    assert parent_run.error_message == "2 of 10 rows skipped"
    assert (await load_config(database, "parent")).next_refresh_at is not None


@pytest.mark.asyncio
async def test_hard_parent_not_due_blocks_dependent(database, test_settings):
    await add_config(database, "parent", next_refresh_at=utcnow() + timedelta(days=1))
    await add_config(database, "child")
    await add_dependency(database, "parent", "child")
    scheduler = make_scheduler(database, test_settings, {"parent": StubHandler(), "child": StubHandler()})

    report = await scheduler.run_cycle()

    assert [(t.table_name, t.status) for t in report.tables] == [("child", "blocked")]


@pytest.mark.asyncio
async def test_soft_parent_failure_does_not_block(database, test_settings):
    await add_config(database, "parent")
    await add_config(database, "child")
    await add_dependency(database, "parent", "child", DependencyType.SOFT)
    child = StubHandler()
    scheduler = make_scheduler(database, test_settings, {
        "parent": StubHandler(RuntimeError("boom")),
        "child": child,
    })

    report = await scheduler.run_cycle()

    statuses = {t.table_name: t.status for t in report.tables}
    assert statuses == {"parent": "failed", "child": "success"}
    assert child.calls == ["child"]


@pytest.mark.asyncio
async def test_timeout_fails_the_run(database, test_settings):
    await add_config(database, "slow", custom_params={"timeout_seconds": 0.05})
    scheduler = make_scheduler(database, test_settings, {"slow": StubHandler(delay=1.0)})

    report = await scheduler.run_cycle()

    outcome = report.tables[0]
    assert outcome.status == "failed"
    assert "timed out" in outcome.error
    run = (await runs_for(database, "slow"))[0]
    assert run.status == RunStatus.FAILED
    assert run.error_details["error_type"] == RunTimeoutError.__name__
    assert run.error_details["category"] == "network"


@pytest.mark.asyncio
async def test_missing_handler_aborts_cycle(database, test_settings):
    await add_config(database, "orders")
    await add_config(database, "orphan")
    orders = StubHandler()
    scheduler = make_scheduler(database, test_settings, {"orders": orders})

    with pytest.raises(UnknownHandlerError):
        await scheduler.run_cycle()

    assert orders.calls == []
    assert scheduler.last_cycle.status == "failed"
    assert len(scheduler.error_tracker.get_errors()) == 1


@pytest.mark.asyncio
async def test_cyclic_dependencies_abort_cycle(database, test_settings):
    a = await add_config(database, "a")
    b = await add_config(database, "b")
    async with database.session() as session:
        session.add_all([
            RefreshDependency(parent_config_id=a.id, dependent_config_id=b.id, dependency_type=DependencyType.HARD),
            RefreshDependency(parent_config_id=b.id, dependent_config_id=a.id, dependency_type=DependencyType.HARD),
        ])
        await session.commit()
    handler = StubHandler()
    scheduler = make_scheduler(database, test_settings, {"a": handler, "b": handler})

    with pytest.raises(CyclicDependencyError):
        await scheduler.run_cycle()

    assert handler.calls == []
    async with database.session() as session:
        assert (await session.execute(select(func.count()).select_from(SyncRun))).scalar() == 0


@pytest.mark.asyncio
async def test_disabled_table_is_ignored(database, test_settings):
    await add_config(database, "orders", is_enabled=False)
    handler = StubHandler()
    scheduler = make_scheduler(database, test_settings, {"orders": handler})

    report = await scheduler.run_cycle()

    assert report.tables == []
    assert handler.calls == []


@pytest.mark.asyncio
async def test_running_audit_row_skips_table(database, test_settings):
    config = await add_config(database, "orders")
    async with database.session() as session:
        session.add(SyncRun(
            run_id=uuid.uuid4(),
            refresh_config_id=config.id,
            table_schema="public",
            table_name="orders",
            status=RunStatus.RUNNING,
            started_at=utcnow(),
        ))
        await session.commit()
    handler = StubHandler()
    scheduler = make_scheduler(database, test_settings, {"orders": handler})

    report = await scheduler.run_cycle()

    assert report.tables[0].status == "skipped"
    assert handler.calls == []
    assert len(await runs_for(database, "orders")) == 1


@pytest.mark.asyncio
async def test_abandoned_running_row_is_closed_and_table_runs(database, test_settings):
    config = await add_config(database, "orders")
    abandoned_id = uuid.uuid4()
    async with database.session() as session:
        session.add(SyncRun(
            run_id=abandoned_id,
            refresh_config_id=config.id,
            table_schema="public",
            table_name="orders",
            status=RunStatus.RUNNING,
            started_at=utcnow() - timedelta(hours=1),
        ))
        await session.commit()
    handler = StubHandler()
    scheduler = make_scheduler(database, test_settings, {"orders": handler})

    report = await scheduler.run_cycle()

    assert report.tables[0].status == "success"
    assert handler.calls == ["orders"]
    abandoned, fresh = await runs_for(database, "orders")
    assert abandoned.run_id == abandoned_id
    assert abandoned.status == RunStatus.FAILED
    assert abandoned.error_details["error_type"] == "RunTimeoutError"
    assert abandoned.error_details["category"] == "network"
    assert fresh.status == RunStatus.SUCCESS
    tracked = scheduler.error_tracker.get_errors()
    assert len(tracked) == 1
    assert "abandoned" in tracked[0].message


@pytest.mark.asyncio
async def test_running_row_within_timeout_is_not_closed(database, test_settings):
    config = await add_config(database, "orders", custom_params={"timeout_seconds": 600})
    async with database.session() as session:
        session.add(SyncRun(
            run_id=uuid.uuid4(),
            refresh_config_id=config.id,
            table_schema="public",
            table_name="orders",
            status=RunStatus.RUNNING,
            # past the global timeout plus grace, but not this table's own limit
            started_at=utcnow() - timedelta(minutes=10),
        ))
        await session.commit()
    scheduler = make_scheduler(database, test_settings, {"orders": StubHandler()})

    report = await scheduler.run_cycle()

    assert report.tables[0].status == "skipped"
    assert (await runs_for(database, "orders"))[0].status == RunStatus.RUNNING


@pytest.mark.asyncio
async def test_overlapping_cycles_run_a_table_once(database, test_settings):
    await add_config(database, "orders")
    gate = asyncio.Event()
    handler = StubHandler(gate=gate)
    scheduler = make_scheduler(database, test_settings, {"orders": handler})

    first = asyncio.create_task(scheduler.run_cycle())
    for _ in range(200):
        if handler.calls:
            break
        await asyncio.sleep(0.01)
    assert handler.calls == ["orders"]

    second = await scheduler.run_cycle()
    running = [r for r in await runs_for(database, "orders") if r.status == RunStatus.RUNNING]

    gate.set()
    first_report = await first

    assert second.tables[0].status == "skipped"
    assert len(running) == 1
    assert first_report.tables[0].status == "success"
    assert handler.calls == ["orders"]


@pytest.mark.asyncio
async def test_register_handler(database, test_settings):
    await add_config(database, "orders")
    scheduler = make_scheduler(database, test_settings, {})
    scheduler.register_handler("orders", StubHandler())

    report = await scheduler.run_cycle()

    assert report.tables[0].status == "success"
    assert scheduler.table_outcomes["public.orders"].status == "success"


@pytest.mark.asyncio
async def test_start_and_stop(database, test_settings):
    scheduler = make_scheduler(database, test_settings, {})
    assert scheduler.is_running is False
    assert scheduler.status == "idle"

    scheduler.start(interval_minutes=5)
    scheduler.start()
    assert scheduler.is_running is True

    scheduler.stop()
    assert scheduler.is_running is False
    scheduler.stop()


@pytest.mark.asyncio
async def test_scheduled_cycle_swallows_configuration_errors(database, test_settings):
    await add_config(database, "orphan")
    scheduler = make_scheduler(database, test_settings, {})

    await scheduler.run_scheduled_cycle()

    assert scheduler.last_cycle.status == "failed"
