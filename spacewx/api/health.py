"""
Health probes.

    GET /health          full component report (always 200)
    GET /health/live     process is up
    GET /health/ready    503 when any component is unhealthy
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from spacewx.api.deps import AlertServices, get_services
from spacewx.core.health import HealthStatus, run_health_check

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health(services: AlertServices = Depends(get_services)):
    return (await run_health_check(services)).to_dict()


@router.get("/live")
async def liveness():
    return {"status": "alive"}


@router.get("/ready")
async def readiness(services: AlertServices = Depends(get_services)):
    report = await run_health_check(services)
    if report.status is HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()
