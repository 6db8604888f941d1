"""
FastAPI dependencies
"""

from typing import Optional

from fastapi import Request

from ingestion.service import SyncService


def get_service(request: Request) -> SyncService:
    """Sync service attached to the application at startup"""
    return request.app.state.service


def get_request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)
