"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from core.timeutils import utcnow
from monitoring.alerting import Alert
from monitoring.error_tracker import ErrorDetail, ErrorSummary
from schemas.monitoring import HealthReport, HistoryPage, PipelineState
from schemas.sync import CycleReport


class RequestMeta(BaseModel):
    request_id: Optional[str] = None


# ============================================================================
# Health & State
# ============================================================================

class HealthResponse(HealthReport, RequestMeta):
    """Health report plus request metadata"""

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "health_score": 100,
                "checks": [
                    {"name": "database_connectivity", "status": "pass", "message": "Database connection successful"}
                ],
                "tables": [],
                "recommendations": [],
                "timestamp": "2024-01-15T10:30:00",
                "request_id": "0b6f0d9e-1c3a-4f0e-9a57-0e7c1f1c2a11"
            }
        }


class StatusResponse(RequestMeta):
    state: PipelineState


class HistoryResponse(HistoryPage, RequestMeta):
    pass


# ============================================================================
# Operations
# ============================================================================

class TriggerResponse(RequestMeta):
    cycle: CycleReport


class CleanupResponse(RequestMeta):
    days_to_keep: int
    sync_runs_deleted: int
    errors_deleted: int


# ============================================================================
# Alerts, Errors & Metrics
# ============================================================================

class AlertsResponse(RequestMeta):
    count: int
    alerts: List[Alert]


class ErrorsResponse(RequestMeta):
    summary: ErrorSummary
    errors: List[ErrorDetail] = Field(default_factory=list)


class MetricsResponse(RequestMeta):
    summary: Dict[str, Any]
    errors: Dict[str, Any]
    alerts: List[Dict[str, Any]]
    metadata: Dict[str, Any]


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "configuration",
                "detail": "Cyclic refresh dependency detected",
                "context": {"tables": ["public.a", "public.b", "public.a"]},
                "timestamp": "2024-01-15T10:30:00"
            }
        }
