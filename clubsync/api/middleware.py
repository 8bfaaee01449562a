"""
Request logging middleware for the bridge.
"""
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from clubsync.core.logging import get_logger

logger = get_logger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and latency of every bridge request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # probes are polled constantly
        if request.url.path.startswith("/health"):
            return await call_next(request)

        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        logger.info(
            "Request handled",
            extra={
                "extra_data": {
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "latency_ms": round(duration * 1000, 2),
                }
            }
        )
        return response
