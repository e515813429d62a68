"""
Ops Gateway - Middleware Components

Request logging with correlation ids: every log line written while handling a
request carries the request's id, which is echoed in the X-Request-ID header.
"""
import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from ..shared.logging_config import CorrelationContext

logger = logging.getLogger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Logging middleware for request/response logging.
    Binds a correlation id for the duration of the request.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.perf_counter()

        with CorrelationContext(request_id):
            try:
                response = await call_next(request)
            except Exception as e:
                logger.error(
                    f"Request failed: {e}",
                    extra={
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
                    },
                )
                raise

            logger.info(
                "Request completed",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
                },
            )

        response.headers["X-Request-ID"] = request_id
        return response
