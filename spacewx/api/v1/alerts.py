"""
FastAPI routes: alert history, manual alerts, gateway callbacks, polling.

    GET  /api/v1/alerts/history/{phone}    — last 10 alerts delivered to a phone
    POST /api/v1/alerts/send               — operator broadcast to all subscribers
    POST /api/v1/alerts/delivery-report    — SMS gateway delivery report
    POST /api/v1/alerts/poll               — run one poll cycle now
"""

from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends

from spacewx.alerts.models import AlertDelivery, DeliveryChannel
from spacewx.alerts.scheduler import SchedulerState
from spacewx.api.deps import AlertServices, get_services
from spacewx.api.schemas import (
    AlertOut,
    CycleReportOut,
    DeliveryReportRequest,
    DeliveryReportResponse,
    ManualAlertRequest,
    ManualAlertResponse,
)
from spacewx.core.errors import (
    NotFoundError,
    PollInProgressError,
    SpaceWeatherAlertError,
    ValidationError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])

HISTORY_LIMIT = 10


@router.get("/history/{phone_number}", response_model=List[AlertOut])
async def alert_history(
    phone_number: str,
    services: AlertServices = Depends(get_services),
):
    """Most recent alerts with at least one delivery to this phone, newest first."""
    deliveries = await services.delivery_ledger.find_by_phone(phone_number)

    alerts = []
    for alert_id in {d.alert_id for d in deliveries}:
        alert = await services.alert_ledger.get(alert_id)
        if alert is not None:
            alerts.append(alert)
    alerts.sort(key=lambda a: a.sent_at, reverse=True)

    logger.info(
        "Alert history retrieved for %s (%d alerts)", phone_number, len(alerts),
        extra={"recipient": phone_number},
    )
    return [a.to_dict() for a in alerts[:HISTORY_LIMIT]]


@router.post("/send", response_model=ManualAlertResponse)
async def send_manual_alert(
    body: ManualAlertRequest,
    services: AlertServices = Depends(get_services),
):
    subscribers = await services.subscribers.find_subscribed()
    alert, attempts = await services.dispatcher.broadcast(body.message, subscribers)
    sent = sum(1 for a in attempts if a.succeeded)

    if not subscribers:
        summary = "No subscribed users found, alert recorded"
    else:
        summary = f"Alerts sent to {sent} user(s)"
    return {
        "message": summary,
        "alert": alert.to_dict(),
        "sent": sent,
        "failed": len(attempts) - sent,
    }


@router.post("/delivery-report", response_model=DeliveryReportResponse)
async def delivery_report(
    body: DeliveryReportRequest,
    services: AlertServices = Depends(get_services),
):
    """
    Accept a delivery report from the SMS gateway.

    ``id`` is matched against the gateway message id stored when the SMS
    was accepted. A purely numeric ``id`` that matches no message is
    treated as an alert id and the report is appended to that alert.
    """
    if not (body.id and body.status and body.phone_number):
        logger.warning(
            "Invalid delivery report data: id=%s status=%s phone=%s",
            body.id, body.status, body.phone_number,
        )
        raise ValidationError("Missing required fields: id, status, phoneNumber")

    updated = await services.delivery_ledger.apply_report(
        body.id, body.status, body.phone_number,
    )
    if updated is not None:
        logger.info(
            "Delivery report applied: %s → %s", body.id, body.status,
            extra={"recipient": body.phone_number, "alert_id": updated.alert_id},
        )
        return {"success": True, "delivery": updated.to_dict()}

    if not body.id.isdigit():
        raise NotFoundError("delivery", provider_message_id=body.id)

    alert_id = int(body.id)
    if await services.alert_ledger.get(alert_id) is None:
        raise NotFoundError("alert", alert_id=alert_id)

    created = await services.delivery_ledger.create(AlertDelivery(
        alert_id=alert_id,
        phone_number=body.phone_number,
        status=body.status,
        channel=DeliveryChannel.SMS.value,
    ))
    logger.info(
        "Delivery report recorded for alert %d: %s", alert_id, body.status,
        extra={"recipient": body.phone_number, "alert_id": alert_id},
    )
    return {"success": True, "delivery": created.to_dict()}


@router.post("/poll", response_model=CycleReportOut)
async def poll_now(services: AlertServices = Depends(get_services)):
    """Run one poll cycle immediately (skipped if one is already running)."""
    if services.scheduler.state is SchedulerState.POLLING:
        raise PollInProgressError()
    report = await services.scheduler.run_once()
    if report is None:
        raise SpaceWeatherAlertError("Poll cycle failed; see server logs")
    return report.to_dict()
