"""
Space-weather alert service: FastAPI app factory.

Run with:
    uvicorn spacewx.main:app --reload --port 8000

The lifespan wires stores, gateways and the alert engine, then starts the
poll scheduler (first cycle immediately, then every POLL_INTERVAL_SECONDS).
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# ── Core infrastructure ──
from spacewx.core.config import settings
from spacewx.core.database import close_db
from spacewx.core.logging_config import setup_logging, get_logger
from spacewx.core.errors import register_error_handlers
from spacewx.core.middleware import RequestLoggingMiddleware

# ── Service wiring & routers ──
from spacewx.api.deps import AlertServices, build_services
from spacewx.alerts.models import EventType
from spacewx.api.health import router as health_router
from spacewx.api.v1.alerts import router as alert_router
from spacewx.api.v1.users import router as user_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def create_app(
    services: Optional[AlertServices] = None,
    *,
    start_scheduler: bool = settings.SCHEDULER_ENABLED,
) -> FastAPI:
    """
    Build the application.

    Passing ``services`` skips database setup (used by the test-suite);
    the caller then owns their lifecycle beyond the scheduler.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        owned = services is None
        app.state.services = services or await build_services(settings)

        if start_scheduler:
            await app.state.services.scheduler.start()
        yield

        logger.info("Shutting down %s", settings.APP_NAME)
        await app.state.services.scheduler.stop()
        if owned:
            await app.state.services.close()
            await close_db()

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Space-weather alerting service. Polls NOAA SWPC and NASA DONKI "
            "feeds, classifies geomagnetic storms, solar flares, radio "
            "blackouts, CMEs, radiation storms and auroral activity, and "
            "delivers role- and preference-targeted SMS and email alerts."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── Middleware stack (outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    register_error_handlers(app)

    app.include_router(user_router)
    app.include_router(alert_router)
    app.include_router(health_router)

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "event_types": [t.value for t in EventType],
            "poll_interval_seconds": settings.POLL_INTERVAL_SECONDS,
            "docs": "/docs",
        }

    return app


app = create_app()
