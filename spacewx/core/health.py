"""
health.py — Component probes behind /health and /health/ready.

    Component   Healthy when                           Degraded when
    ─────────   ────────────────────────────────────   ─────────────────────────────
    database    SELECT 1 succeeds                      in-memory stores configured
    scheduler   running and last cycle completed       stopped, or last cycle aborted
    channels    live SMS and email providers           any simulation provider
    feeds       last cycle fetched every feed          some feeds failed last cycle

A database that is configured but unreachable, or a last cycle in which
every feed failed, makes the service unhealthy (readiness returns 503).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from spacewx.core.config import settings

if TYPE_CHECKING:
    from spacewx.alerts.models import CycleReport
    from spacewx.api.deps import AlertServices

logger = logging.getLogger(__name__)

_PROCESS_STARTED = time.monotonic()


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


def worst(statuses: List[HealthStatus]) -> HealthStatus:
    return max(statuses, key=_SEVERITY.__getitem__, default=HealthStatus.HEALTHY)


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    message: str = ""
    latency_ms: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"name": self.name, "status": self.status.value}
        if self.latency_ms is not None:
            out["latency_ms"] = round(self.latency_ms, 2)
        if self.message:
            out["message"] = self.message
        if self.details:
            out["details"] = self.details
        return out


@dataclass
class HealthReport:
    components: List[ComponentHealth]
    last_poll: Optional[Dict[str, Any]] = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> HealthStatus:
        return worst([c.status for c in self.components])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "timestamp": self.checked_at.isoformat(),
            "uptime_seconds": round(time.monotonic() - _PROCESS_STARTED, 1),
            "last_poll": self.last_poll,
            "components": [c.to_dict() for c in self.components],
        }


async def check_database(engine: Optional[AsyncEngine]) -> ComponentHealth:
    if engine is None:
        return ComponentHealth(
            "database", HealthStatus.DEGRADED, "In-memory stores (no persistence)",
        )

    started = time.perf_counter()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.error("Database health probe failed: %s", exc)
        return ComponentHealth(
            "database", HealthStatus.UNHEALTHY, str(exc),
            latency_ms=(time.perf_counter() - started) * 1000,
        )
    return ComponentHealth(
        "database",
        message="Reachable",
        latency_ms=(time.perf_counter() - started) * 1000,
        details={"url": engine.url.render_as_string(hide_password=True)},
    )


def check_scheduler(services: "AlertServices") -> ComponentHealth:
    scheduler = services.scheduler
    last = scheduler.last_report
    comp = ComponentHealth("scheduler", details={
        "running": scheduler.running,
        "state": scheduler.state.value,
        "interval_seconds": scheduler.interval_seconds,
        "cycles_run": scheduler.cycles_run,
        "cycles_skipped": scheduler.cycles_skipped,
    })

    if last is not None and last.aborted:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Last poll cycle aborted: {last.error}"
    elif not scheduler.running:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Scheduler not running"
    else:
        comp.message = "Polling on schedule"
    return comp


def check_channels(services: "AlertServices") -> ComponentHealth:
    providers = {
        "sms": services.sms_gateway.provider,
        "email": services.email_gateway.provider,
    }
    simulated = sorted(ch for ch, p in providers.items() if p == "simulation")
    if simulated:
        return ComponentHealth(
            "channels", HealthStatus.DEGRADED,
            f"Simulated delivery on: {', '.join(simulated)}", details=providers,
        )
    return ComponentHealth("channels", message="Live providers configured", details=providers)


def check_feeds(services: "AlertServices") -> ComponentHealth:
    feeds = {f.name: f.url for f in services.feed_client.feeds}
    last = services.scheduler.last_report
    comp = ComponentHealth("feeds", details=feeds)

    if last is None or last.aborted:
        comp.message = f"{len(feeds)} feeds configured, no completed cycle yet"
        return comp

    failed = sorted(last.feed_errors)
    if failed and len(failed) >= len(feeds):
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Every feed failed in the last cycle"
    elif failed:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Failed last cycle: {', '.join(failed)}"
    else:
        comp.message = f"All {len(feeds)} feeds fetched in the last cycle"
    return comp


def _last_poll_summary(report: Optional["CycleReport"]) -> Optional[Dict[str, Any]]:
    if report is None:
        return None
    return {
        "cycle_id": report.cycle_id,
        "completed_at": report.completed_at.isoformat() if report.completed_at else None,
        "events_detected": report.events_detected,
        "alerts_created": report.alerts_created,
        "aborted": report.aborted,
    }


async def run_health_check(services: "AlertServices") -> HealthReport:
    components = [
        await check_database(services.db_engine),
        check_scheduler(services),
        check_channels(services),
        check_feeds(services),
    ]
    return HealthReport(
        components=components,
        last_poll=_last_poll_summary(services.scheduler.last_report),
    )
