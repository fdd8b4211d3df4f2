"""
middleware.py — Per-request correlation id, timing and access log.

Each request runs inside a log scope holding its request id and API area
(``users``, ``alerts``, ``health`` or ``root``), so route handlers and the
poll cycle they may trigger log with the same id. Subscriber phone numbers
appear in some paths and are masked in the access log.

Response headers:
    X-Request-ID     echoed from the caller or generated
    X-Process-Time   handler duration, e.g. ``12.4ms``
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from spacewx.core.config import settings
from spacewx.core.logging_config import log_scope, mask_phone

logger = logging.getLogger(__name__)

# Paths polled by probes and docs; not worth an access line each
_UNLOGGED = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")


def api_area(path: str) -> str:
    """``/api/v1/alerts/poll`` → ``alerts``; ``/health/ready`` → ``health``."""
    parts = [p for p in path.split("/") if p]
    if len(parts) >= 3 and parts[0] == "api":
        return parts[2]
    if parts and parts[0] == "health":
        return "health"
    return "root"


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        path = request.url.path
        shown = mask_phone(path) if settings.LOG_MASK_RECIPIENTS else path

        with log_scope(request_id=request_id, area=api_area(path)):
            started = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "%s %s raised after %.1fms", request.method, shown,
                    (time.perf_counter() - started) * 1000,
                    extra={"status_code": 500, "endpoint": shown},
                )
                raise

            elapsed = (time.perf_counter() - started) * 1000
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{elapsed:.1f}ms"

            if not path.startswith(_UNLOGGED):
                logger.log(
                    logging.WARNING if response.status_code >= 400 else logging.INFO,
                    "%s %s → %d (%.1fms)",
                    request.method, shown, response.status_code, elapsed,
                    extra={
                        "duration_ms": round(elapsed, 1),
                        "status_code": response.status_code,
                        "endpoint": shown,
                    },
                )
        return response
