"""
Refresh orchestration endpoints: status, history, alerts, metrics,
errors, manual trigger and retention cleanup
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse

from api.dependencies import get_request_id, get_service
from core.exceptions import ErrorCategory
from ingestion.service import SyncService
from monitoring.error_tracker import ErrorSeverity
from schemas.api import (
    AlertsResponse,
    CleanupResponse,
    ErrorsResponse,
    HistoryResponse,
    MetricsResponse,
    StatusResponse,
    TriggerResponse,
)
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/refresh", tags=["Refresh"])


@router.get("/status", response_model=StatusResponse)
async def refresh_status(
    service: SyncService = Depends(get_service),
    request_id: str = Depends(get_request_id)
):
    """Scheduler state: current/last cycle and last outcome per table"""
    return StatusResponse(state=service.monitor.get_state(), request_id=request_id)


@router.get("/history", response_model=HistoryResponse)
async def refresh_history(
    limit: int = Query(50, ge=1, le=500, description="Number of runs to return"),
    offset: int = Query(0, ge=0, description="Runs to skip"),
    table_name: Optional[str] = Query(None, description="Filter by table name"),
    service: SyncService = Depends(get_service),
    request_id: str = Depends(get_request_id)
):
    """Refresh audit log, newest first"""
    page = await service.monitor.get_history(limit=limit, offset=offset, table_name=table_name)
    return HistoryResponse(**page.model_dump(), request_id=request_id)


@router.get("/alerts", response_model=AlertsResponse)
async def refresh_alerts(
    service: SyncService = Depends(get_service),
    request_id: str = Depends(get_request_id)
):
    """Evaluate alert thresholds now and deliver active alerts"""
    alerts = await service.monitor.check_alerts()
    return AlertsResponse(count=len(alerts), alerts=alerts, request_id=request_id)


@router.get("/metrics", response_model=MetricsResponse)
async def refresh_metrics(
    service: SyncService = Depends(get_service),
    request_id: str = Depends(get_request_id)
):
    metrics = await service.monitor.export_metrics()
    return MetricsResponse(**metrics, request_id=request_id)


@router.get("/errors", response_model=ErrorsResponse)
async def refresh_errors(
    category: Optional[ErrorCategory] = Query(None),
    severity: Optional[ErrorSeverity] = Query(None),
    resolved: Optional[bool] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    service: SyncService = Depends(get_service),
    request_id: str = Depends(get_request_id)
):
    """Error summary plus tracked errors matching the filters (newest first)"""
    tracker = service.error_tracker
    errors = tracker.get_errors(category=category, severity=severity, resolved=resolved)
    errors = sorted(errors, key=lambda e: e.timestamp, reverse=True)[:limit]
    return ErrorsResponse(summary=tracker.get_error_summary(), errors=errors, request_id=request_id)


@router.get("/errors/export", response_class=PlainTextResponse)
async def export_errors(
    format: str = Query("json", pattern="^(json|csv)$"),
    service: SyncService = Depends(get_service)
):
    media_type = "text/csv" if format == "csv" else "application/json"
    return PlainTextResponse(service.error_tracker.export_errors(format), media_type=media_type)


@router.post("/errors/{error_id}/resolve")
async def resolve_error(
    error_id: str,
    resolution: Optional[str] = Query(None),
    service: SyncService = Depends(get_service)
):
    detail = service.error_tracker.resolve_error(error_id, resolution)
    if detail is None:
        raise HTTPException(status_code=404, detail=f"Unknown error id {error_id}")
    return detail


@router.post("/trigger", response_model=TriggerResponse)
async def trigger_refresh(
    service: SyncService = Depends(get_service),
    request_id: str = Depends(get_request_id)
):
    """
    Run one refresh cycle now.

    Configuration errors (cyclic dependencies, missing handlers) are
    answered with 409 before any table runs.
    """
    logger.info(f"[{request_id}] Manual refresh cycle requested")
    report = await service.run_cycle()
    return TriggerResponse(cycle=report, request_id=request_id)


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup(
    days_to_keep: Optional[int] = Query(None, ge=0, description="Defaults to HISTORY_RETENTION_DAYS"),
    service: SyncService = Depends(get_service),
    request_id: str = Depends(get_request_id)
):
    days = service.settings.HISTORY_RETENTION_DAYS if days_to_keep is None else days_to_keep
    result = await service.monitor.cleanup_old_data(days)
    return CleanupResponse(days_to_keep=days, request_id=request_id, **result)
