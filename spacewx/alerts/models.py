"""
models.py — Shared data structures for the space-weather alert engine.

Defines:
    • EventType      — the fixed set of hazards we alert on
    • AlertLevel     — Watch < Warning < Critical
    • Role           — subscriber roles used for targeting
    • Observation    — one parsed (value, timestamp) feed entry
    • SpaceWeatherEvent — a classified, threshold-crossing observation
    • Subscriber     — a target user with location, role and preferences
    • Alert / AlertDelivery — ledger rows
    • DeliveryAttempt / EventDispatchResult / CycleReport — per-cycle outcomes

═══════════════════════════════════════════════════════════════════════════
ROLE RELEVANCE
═══════════════════════════════════════════════════════════════════════════

    Event Type       pilot   telecom   farmer   general
    ─────────────    ─────   ───────   ──────   ───────
    geomagnetic        ✓        ✓        ✓        ✓
    cme                ✓        ✓        ✓        ✓
    solarflare         ✓        ✓                 ✓
    radioblackout      ✓        ✓                 ✓
    radiation          ✓        ✓                 ✓
    auroral                              ✓        ✓

Preferences left unset fall back to the onboarding default: geomagnetic
alerts are on, every other type is off.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class EventType(str, Enum):
    """Space-weather hazard types."""
    GEOMAGNETIC   = "geomagnetic"
    SOLARFLARE    = "solarflare"
    RADIATION     = "radiation"
    CME           = "cme"
    RADIOBLACKOUT = "radioblackout"
    AURORAL       = "auroral"


class AlertLevel(IntEnum):
    """
    Severity tiers — integer ordering enables comparison.

    The stored / displayed form is the capitalised label ("Watch", ...).
    """
    WATCH    = 1
    WARNING  = 2
    CRITICAL = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def from_label(cls, label: str) -> "AlertLevel":
        return cls[label.upper()]


class Role(str, Enum):
    """Subscriber roles collected at onboarding."""
    PILOT   = "pilot"
    TELECOM = "telecom"
    FARMER  = "farmer"
    GENERAL = "general"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Role":
        """Unknown or missing roles are treated as general."""
        try:
            return cls(value or cls.GENERAL.value)
        except ValueError:
            return cls.GENERAL


class DeliveryChannel(str, Enum):
    SMS   = "sms"
    EMAIL = "email"


class DeliveryStatus(str, Enum):
    """Statuses written by the dispatcher; gateway reports may add others."""
    SENT       = "SENT"
    EMAIL_SENT = "EMAIL_SENT"
    FAILED     = "FAILED"


# ═══════════════════════════════════════════════════════════════════════════
# Static Tables
# ═══════════════════════════════════════════════════════════════════════════

_ALL_ROLES = frozenset(Role)

RELEVANT_ROLES: Dict[EventType, FrozenSet[Role]] = {
    EventType.GEOMAGNETIC:   _ALL_ROLES,
    EventType.CME:           _ALL_ROLES,
    EventType.SOLARFLARE:    frozenset({Role.TELECOM, Role.PILOT, Role.GENERAL}),
    EventType.RADIOBLACKOUT: frozenset({Role.TELECOM, Role.PILOT, Role.GENERAL}),
    EventType.RADIATION:     frozenset({Role.TELECOM, Role.PILOT, Role.GENERAL}),
    EventType.AURORAL:       frozenset({Role.FARMER, Role.GENERAL}),
}

DEFAULT_PREFERENCES: Dict[EventType, bool] = {
    EventType.GEOMAGNETIC:   True,
    EventType.SOLARFLARE:    False,
    EventType.RADIATION:     False,
    EventType.CME:           False,
    EventType.RADIOBLACKOUT: False,
    EventType.AURORAL:       False,
}

SUCCESS_STATUS_BY_CHANNEL: Dict[DeliveryChannel, DeliveryStatus] = {
    DeliveryChannel.SMS:   DeliveryStatus.SENT,
    DeliveryChannel.EMAIL: DeliveryStatus.EMAIL_SENT,
}


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _cycle_id() -> str:
    return uuid.uuid4().hex[:8]


def dedup_key_for(
    event_type: EventType,
    sent_at: datetime,
    window_seconds: float,
) -> str:
    """
    Ledger uniqueness key: event type + cooldown bucket.

    Two writers racing inside the same bucket collide on this key, so at
    most one of them records an alert.
    """
    bucket = int(sent_at.timestamp() // window_seconds)
    return f"{event_type.value}:{bucket}"


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Observation:
    """One numeric reading from a feed, timestamp kept in feed-native form."""
    value: float
    timestamp: str
    feed: str = ""


@dataclass(frozen=True)
class SpaceWeatherEvent:
    """
    A classified, threshold-crossing observation ready for dispatch.

    Attributes
    ----------
    id : str
        Feed timestamp, prefixed for derived events (``auroral-<ts>``).
    type : EventType
    level : AlertLevel
    message : str
        Human-readable text carrying the triggering value and issue time.
    issued_at : str
        Upstream timestamp, treated opaquely.
    relevant_to_roles : frozenset of Role
    metric_value : float
        The raw value that crossed the threshold.
    """
    id: str
    type: EventType
    level: AlertLevel
    message: str
    issued_at: str
    relevant_to_roles: FrozenSet[Role]
    metric_value: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "level": self.level.label,
            "message": self.message,
            "issued_at": self.issued_at,
            "relevant_to_roles": sorted(r.value for r in self.relevant_to_roles),
            "metric_value": self.metric_value,
        }


@dataclass
class Subscriber:
    """
    A subscriber record as owned by the subscriber store.

    Attributes
    ----------
    phone_number : str
        Unique identifier (E.164, e.g. +254712345678).
    location : str
        Free-text place name, geocoded on demand.
    role : Role
    email : str | None
    subscribed : bool
    preferences : dict
        Per-type opt-in flags keyed by EventType value; missing keys use
        DEFAULT_PREFERENCES.
    id : int | None
        Store-assigned primary key.
    """
    phone_number: str
    location: str = ""
    role: Role = Role.GENERAL
    email: Optional[str] = None
    subscribed: bool = True
    preferences: Dict[str, bool] = field(default_factory=dict)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "phone_number": self.phone_number,
            "location": self.location,
            "role": self.role.value,
            "email": self.email,
            "subscribed": self.subscribed,
            "preferences": dict(self.preferences),
        }


@dataclass
class Alert:
    """Append-only ledger row; doubles as the duplicate-suppression record."""
    message: str
    level: str
    type: str
    sent_at: datetime = field(default_factory=_now)
    user_id: Optional[int] = None
    dedup_key: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "message": self.message,
            "level": self.level,
            "type": self.type,
            "sent_at": self.sent_at.isoformat(),
            "user_id": self.user_id,
        }


@dataclass
class AlertDelivery:
    """Per-channel delivery outcome, child of an Alert."""
    alert_id: int
    phone_number: str
    status: str
    channel: str = DeliveryChannel.SMS.value
    provider_message_id: Optional[str] = None
    received_at: datetime = field(default_factory=_now)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "alert_id": self.alert_id,
            "phone_number": self.phone_number,
            "status": self.status,
            "channel": self.channel,
            "provider_message_id": self.provider_message_id,
            "received_at": self.received_at.isoformat(),
        }


@dataclass
class DeliveryAttempt:
    """Record of a single send to one recipient via one channel."""
    channel: DeliveryChannel
    recipient: str
    succeeded: bool
    provider_message_id: Optional[str] = None
    error_message: Optional[str] = None
    attempted_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.value,
            "recipient": self.recipient,
            "succeeded": self.succeeded,
            "provider_message_id": self.provider_message_id,
            "error_message": self.error_message,
            "attempted_at": self.attempted_at.isoformat(),
        }


@dataclass
class EventDispatchResult:
    """What happened to one event during a poll cycle."""
    event: SpaceWeatherEvent
    suppressed: bool = False
    alert_id: Optional[int] = None
    recipients_targeted: int = 0
    attempts: List[DeliveryAttempt] = field(default_factory=list)

    @property
    def failures(self) -> List[DeliveryAttempt]:
        return [a for a in self.attempts if not a.succeeded]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event.to_dict(),
            "suppressed": self.suppressed,
            "alert_id": self.alert_id,
            "recipients_targeted": self.recipients_targeted,
            "attempts": [a.to_dict() for a in self.attempts],
            "failed_attempts": len(self.failures),
        }


@dataclass
class CycleReport:
    """Per-cycle result structure returned by AlertEngine.run_poll_cycle()."""
    cycle_id: str = field(default_factory=_cycle_id)
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    observations: int = 0
    malformed_entries: int = 0
    feed_errors: Dict[str, str] = field(default_factory=dict)
    events: List[EventDispatchResult] = field(default_factory=list)
    # Later same-type events in the cycle, counted but not processed
    repeats_collapsed: Dict[str, int] = field(default_factory=dict)
    aborted: bool = False
    error: Optional[str] = None

    @property
    def events_detected(self) -> int:
        return len(self.events) + sum(self.repeats_collapsed.values())

    @property
    def events_suppressed(self) -> int:
        suppressed = sum(1 for e in self.events if e.suppressed)
        return suppressed + sum(self.repeats_collapsed.values())

    @property
    def alerts_created(self) -> int:
        return sum(1 for e in self.events if e.alert_id is not None)

    @property
    def dispatch_attempts(self) -> int:
        return sum(len(e.attempts) for e in self.events)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "observations": self.observations,
            "malformed_entries": self.malformed_entries,
            "feed_errors": dict(self.feed_errors),
            "events_detected": self.events_detected,
            "events_suppressed": self.events_suppressed,
            "repeats_collapsed": dict(self.repeats_collapsed),
            "alerts_created": self.alerts_created,
            "dispatch_attempts": self.dispatch_attempts,
            "aborted": self.aborted,
            "error": self.error,
            "events": [e.to_dict() for e in self.events],
        }
