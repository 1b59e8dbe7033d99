"""HTTP middleware."""

import time
from typing import Callable
from uuid import uuid4

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from smartdeploy.utils.logging import get_logger

logger = get_logger(__name__)

# Polled by load balancers and uptime checks
QUIET_PATHS = frozenset({"/v1/health"})


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Binds a request id to every log line and records the outcome."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid4().hex
        started = time.perf_counter()

        with structlog.contextvars.bound_contextvars(
            request_id=request_id, method=request.method, path=request.url.path
        ):
            response = await call_next(request)
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

            if response.status_code >= 500:
                logger.warning("request.failed", status_code=response.status_code, duration_ms=elapsed_ms)
            elif request.url.path in QUIET_PATHS:
                logger.debug("request.completed", status_code=response.status_code, duration_ms=elapsed_ms)
            else:
                logger.info("request.completed", status_code=response.status_code, duration_ms=elapsed_ms)

        response.headers["X-Request-ID"] = request_id
        return response
