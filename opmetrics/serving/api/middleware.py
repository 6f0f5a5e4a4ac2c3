"""
API Middleware

Request logging. Each request gets a request id, and the operation id
when the path names one, bound into the structlog context so every
event logged while serving it carries both.
"""

import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
import structlog

logger = structlog.get_logger(__name__)

OPERATION_PATH = re.compile(r"/operations/([^/]+)")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with its timing"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        match = OPERATION_PATH.search(request.url.path)
        if match:
            structlog.contextvars.bind_contextvars(operation_id=match.group(1))

        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled error", method=request.method, path=request.url.path)
            raise
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000

        # Health checks and scrapes would drown everything else at INFO
        quiet = request.url.path.startswith(("/api/v1/health", "/metrics"))
        (logger.debug if quiet else logger.info)(
            "Request served",
            method=request.method,
            path=request.url.path,
            query=str(request.query_params) or None,
            status_code=response.status_code,
            duration_ms=round(elapsed_ms, 2),
        )

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{elapsed_ms:.2f}ms"
        return response
