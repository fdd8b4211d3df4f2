"""
FastAPI routes: subscriber management.

    POST /api/v1/users/subscribe           — create or update a subscriber
    POST /api/v1/users/unsubscribe         — stop alerts for a phone number
    GET  /api/v1/users/{phone}/status      — subscription status
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from spacewx.alerts.models import DEFAULT_PREFERENCES, Role, Subscriber
from spacewx.alerts.targeting import preference_enabled
from spacewx.api.deps import AlertServices, get_services
from spacewx.api.schemas import (
    SubscribeRequest,
    SubscriptionResponse,
    SubscriptionStatusResponse,
    UnsubscribeRequest,
)
from spacewx.core.errors import NotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/users", tags=["subscribers"])


@router.post("/subscribe", response_model=SubscriptionResponse, status_code=201)
async def subscribe(
    body: SubscribeRequest,
    services: AlertServices = Depends(get_services),
):
    """
    Upsert a subscriber keyed by phone number and mark them subscribed.

    Fields omitted from the request keep their stored values; a new
    subscriber starts as ``general`` with no explicit preferences.
    """
    existing = await services.subscribers.find_by_phone(body.phone_number)

    preferences = dict(existing.preferences) if existing else {}
    if body.preferences:
        preferences.update(body.preferences)

    subscriber = Subscriber(
        phone_number=body.phone_number,
        location=body.location,
        role=body.role or (existing.role if existing else Role.GENERAL),
        email=body.email if body.email is not None else (existing.email if existing else None),
        subscribed=True,
        preferences=preferences,
    )
    stored = await services.subscribers.upsert(subscriber)

    logger.info(
        "Subscribed %s in %s as %s", stored.phone_number, stored.location,
        stored.role.value, extra={"recipient": stored.phone_number},
    )
    return {"message": "User subscribed successfully", "user": stored.to_dict()}


@router.post("/unsubscribe", response_model=SubscriptionResponse)
async def unsubscribe(
    body: UnsubscribeRequest,
    services: AlertServices = Depends(get_services),
):
    updated = await services.subscribers.set_subscribed(body.phone_number, False)
    if updated is None:
        raise NotFoundError("subscriber", phone_number=body.phone_number)

    logger.info("Unsubscribed %s", body.phone_number, extra={"recipient": body.phone_number})
    return {"message": "User unsubscribed successfully", "user": updated.to_dict()}


@router.get("/{phone_number}/status", response_model=SubscriptionStatusResponse)
async def subscription_status(
    phone_number: str,
    services: AlertServices = Depends(get_services),
):
    subscriber = await services.subscribers.find_by_phone(phone_number)
    if subscriber is None:
        raise NotFoundError("subscriber", phone_number=phone_number)

    return {
        "phone_number": subscriber.phone_number,
        "subscribed": subscriber.subscribed,
        "location": subscriber.location,
        "role": subscriber.role.value,
        "effective_preferences": {
            t.value: preference_enabled(subscriber, t) for t in DEFAULT_PREFERENCES
        },
    }
