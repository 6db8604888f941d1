"""
Request tracing for the sync API
"""

import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
import logging

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
LATENCY_HEADER = "X-API-Latency-ms"

# Probes hit these constantly; keep them out of INFO logs
QUIET_PATHS = ("/health",)


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """
    Tag every request with a correlation id and measure its latency.

    An incoming X-Request-ID is kept so callers can follow a manual
    refresh trigger through the sync logs. Requests slower than
    ``slow_request_ms`` are logged as warnings.
    """

    def __init__(self, app, slow_request_ms: int = 5000):
        super().__init__(app)
        self.slow_request_ms = slow_request_ms

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers[LATENCY_HEADER] = str(elapsed_ms)

        line = f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({elapsed_ms}ms)"
        if elapsed_ms >= self.slow_request_ms:
            logger.warning(f"Slow request {line}")
        elif request.url.path in QUIET_PATHS:
            logger.debug(line)
        else:
            logger.info(line)
        return response
