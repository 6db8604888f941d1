"""
Health check endpoint with database, freshness and error status
"""

from fastapi import APIRouter, Depends, Response, status
from api.dependencies import get_request_id, get_service
from ingestion.service import SyncService
from schemas.api import HealthResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(
    response: Response,
    service: SyncService = Depends(get_service),
    request_id: str = Depends(get_request_id)
):
    """
    Health check endpoint.

    Returns:
    - Overall status (healthy, degraded, critical) and health score
    - Individual checks: connectivity, failure rate, stale tables,
      critical errors, long-running syncs
    - Per-table staleness and recommendations
    """
    report = await service.monitor.get_health()

    db_check = next((c for c in report.checks if c.name == "database_connectivity"), None)
    if db_check is not None and db_check.status == "fail":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        logger.error(f"[{request_id}] Health check failed: database unreachable")

    return HealthResponse(**report.model_dump(), request_id=request_id)
