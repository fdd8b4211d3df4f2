"""
errors.py — Alert-service exceptions and their HTTP mapping.

Every error carries a status code, a stable error code and a details dict.
Routes let them propagate and the handlers below render them as
``{"error": {"code", "message", "status", "details"}}``; retryable codes
also get a ``Retry-After`` header.

═══════════════════════════════════════════════════════════════════════════
CONTAINMENT POLICY
═══════════════════════════════════════════════════════════════════════════

    Error                        Scope contained at      Effect
    ─────────────────────        ──────────────────      ──────────────────────────
    FeedUnavailableError         one feed                feed skipped this cycle
    MalformedObservationError    one feed entry          entry skipped
    GeocodingError               one subscriber          auroral targeting denied
    DeliveryError                one channel/recipient   logged, no rollback
    StoreUnavailableError        one poll cycle          rest of cycle aborted
    DuplicateAlertError          one event               lost ledger race, reuse winner

Nothing escapes AlertEngine.run_poll_cycle() except as a log record.

Usage:
    from spacewx.core.errors import FeedUnavailableError

    raise FeedUnavailableError("geomagnetic", "HTTP 503")
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from spacewx.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class SpaceWeatherAlertError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(SpaceWeatherAlertError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(SpaceWeatherAlertError):
    """Input validation failed (400)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=400,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class FeedUnavailableError(SpaceWeatherAlertError):
    """An upstream feed could not be fetched or its payload was unusable."""

    def __init__(self, feed: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Feed '{feed}' unavailable: {message}",
            status_code=502,
            error_code="FEED_UNAVAILABLE",
            details={"feed": feed, **details},
        )
        self.feed = feed


class MalformedObservationError(SpaceWeatherAlertError):
    """A single feed entry could not be parsed into an observation."""

    def __init__(self, feed: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Malformed entry in feed '{feed}': {message}",
            status_code=502,
            error_code="MALFORMED_OBSERVATION",
            details={"feed": feed, **details},
        )
        self.feed = feed


class GeocodingError(SpaceWeatherAlertError):
    """Location text could not be resolved to a latitude."""

    def __init__(self, location: str, message: str = ""):
        super().__init__(
            message=f"Geocoding failed for '{location}': {message}",
            status_code=502,
            error_code="GEOCODING_FAILED",
            details={"location": location},
        )


class DeliveryError(SpaceWeatherAlertError):
    """A single SMS or email send failed."""

    def __init__(self, channel: str, recipient: str, message: str = ""):
        super().__init__(
            message=f"Delivery via {channel} to {recipient} failed: {message}",
            status_code=502,
            error_code="DELIVERY_FAILED",
            details={"channel": channel, "recipient": recipient},
        )
        self.channel = channel
        self.recipient = recipient


class StoreUnavailableError(SpaceWeatherAlertError):
    """The persistent store could not be read or written (503)."""

    def __init__(self, operation: str, message: str = ""):
        super().__init__(
            message=f"Store operation '{operation}' failed: {message}",
            status_code=503,
            error_code="STORE_UNAVAILABLE",
            details={"operation": operation},
        )


class DuplicateAlertError(SpaceWeatherAlertError):
    """A concurrent writer already recorded an alert for this type and window."""

    def __init__(self, dedup_key: str, existing_id: Optional[int] = None):
        super().__init__(
            message=f"Alert already recorded for {dedup_key}",
            status_code=409,
            error_code="DUPLICATE_ALERT",
            details={"dedup_key": dedup_key, "existing_id": existing_id},
        )
        self.dedup_key = dedup_key
        self.existing_id = existing_id


class PollInProgressError(SpaceWeatherAlertError):
    """An on-demand poll was requested while a cycle is still running."""

    def __init__(self, cycle_started_at: Optional[str] = None):
        super().__init__(
            message="A poll cycle is already running",
            status_code=409,
            error_code="POLL_IN_PROGRESS",
            details={"cycle_started_at": cycle_started_at} if cycle_started_at else None,
        )


# Seconds a client should wait before retrying, by error code
RETRY_AFTER_SECONDS: Dict[str, int] = {
    "STORE_UNAVAILABLE": 30,
    "POLL_IN_PROGRESS": 10,
}


# ═══════════════════════════════════════════════════════════════════════════
# HTTP Mapping
# ═══════════════════════════════════════════════════════════════════════════

def error_payload(
    exc: SpaceWeatherAlertError, request: Optional[Request] = None
) -> Dict[str, Any]:
    """``{"error": {...}}`` body shared by every error response."""
    error: Dict[str, Any] = {
        "code": exc.error_code,
        "message": exc.message,
        "status": exc.status_code,
    }
    if exc.details:
        error["details"] = exc.details
    if request is not None and not settings.is_production:
        error["path"] = request.url.path
        error["method"] = request.method
    return {"error": error}


def error_response(
    exc: SpaceWeatherAlertError, request: Optional[Request] = None
) -> JSONResponse:
    headers = None
    retry_after = RETRY_AFTER_SECONDS.get(exc.error_code)
    if retry_after is not None:
        headers = {"Retry-After": str(retry_after)}
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(exc, request),
        headers=headers,
    )


def register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(SpaceWeatherAlertError)
    async def on_alert_error(request: Request, exc: SpaceWeatherAlertError):
        level = logging.WARNING if exc.status_code < 500 else logging.ERROR
        logger.log(
            level, "%s %s failed [%s]: %s",
            request.method, request.url.path, exc.error_code, exc.message,
            extra={"status_code": exc.status_code},
        )
        return error_response(exc, request)

    @app.exception_handler(Exception)
    async def on_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled %s on %s", type(exc).__name__, request.url.path)
        wrapped = SpaceWeatherAlertError(
            str(exc) if settings.DEBUG else "Internal server error"
        )
        return error_response(wrapped, request)
