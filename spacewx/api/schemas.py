"""
Pydantic schemas for the subscriber and alert APIs.

Request bodies accept the gateway / mobile client's camelCase names
(``phoneNumber``) as well as snake_case.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from spacewx.alerts.models import EventType, Role

PHONE_REGEX = r"^\+\d{10,15}$"


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class SubscribeRequest(BaseModel):
    """Request body for POST /api/v1/users/subscribe."""
    model_config = ConfigDict(populate_by_name=True)

    phone_number: str = Field(
        ..., alias="phoneNumber", pattern=PHONE_REGEX,
        examples=["+254712345678"],
    )
    location: str = Field(..., min_length=1, max_length=255, examples=["Nairobi"])
    role: Optional[Role] = Field(None, examples=["farmer"])
    email: Optional[str] = Field(None, examples=["farmer@example.com"])
    preferences: Optional[Dict[str, bool]] = Field(
        None,
        description="Per-type opt-in flags; unset types use the defaults",
        examples=[{"geomagnetic": True, "auroral": True}],
    )

    @field_validator("location")
    @classmethod
    def _strip_location(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("location cannot be empty")
        return v

    @field_validator("preferences")
    @classmethod
    def _known_types(cls, v: Optional[Dict[str, bool]]) -> Optional[Dict[str, bool]]:
        if v is None:
            return v
        known = {t.value for t in EventType}
        unknown = sorted(set(v) - known)
        if unknown:
            raise ValueError(f"unknown event types: {', '.join(unknown)}")
        return v


class UnsubscribeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phone_number: str = Field(..., alias="phoneNumber", examples=["+254712345678"])


class ManualAlertRequest(BaseModel):
    """Request body for POST /api/v1/alerts/send."""
    message: str = Field(..., min_length=1, max_length=480)


class DeliveryReportRequest(BaseModel):
    """
    Gateway delivery report.

    Fields are optional here so the handler can answer 400 with the
    gateway-facing error body instead of a 422 validation dump.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(None, examples=["ATXid_1f2e..."])
    status: Optional[str] = Field(None, examples=["Success"])
    phone_number: Optional[str] = Field(None, alias="phoneNumber")


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class SubscriberOut(BaseModel):
    id: Optional[int]
    phone_number: str
    location: str
    role: str
    email: Optional[str]
    subscribed: bool
    preferences: Dict[str, bool]


class SubscriptionResponse(BaseModel):
    message: str
    user: SubscriberOut


class SubscriptionStatusResponse(BaseModel):
    phone_number: str
    subscribed: bool
    location: str
    role: str
    effective_preferences: Dict[str, bool] = Field(
        ..., description="Stored flags merged over the defaults",
    )


class AlertOut(BaseModel):
    id: Optional[int]
    message: str
    level: str
    type: str
    sent_at: str
    user_id: Optional[int] = None


class ManualAlertResponse(BaseModel):
    message: str
    alert: AlertOut
    sent: int
    failed: int


class DeliveryReportResponse(BaseModel):
    success: bool = True
    delivery: Dict[str, Any]


class CycleReportOut(BaseModel):
    cycle_id: str
    started_at: str
    completed_at: Optional[str]
    observations: int
    malformed_entries: int
    feed_errors: Dict[str, str]
    events_detected: int
    events_suppressed: int
    repeats_collapsed: Dict[str, int]
    alerts_created: int
    dispatch_attempts: int
    aborted: bool
    error: Optional[str]
    events: List[Dict[str, Any]]
