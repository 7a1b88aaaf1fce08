"""
models.py — Shared data structures for the crash-alert system.

Defines:
    • AlertStatus     — lifecycle states of an alert
    • Severity        — coarse seriousness derived from the magnitude score
    • DeliveryMethod  — channel(s) used to reach a contact
    • DeliveryOutcome — per-contact delivery result
    • LiveEvent       — real-time event names pushed over live connections
    • Account / EmergencyContact / AccountSettings
    • Alert / AlertLocation / DeliveryRecord

═══════════════════════════════════════════════════════════════════════════
ALERT STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    ┌─────────┐  countdown expires   ┌──────┐  contact responds  ┌──────────────┐
    │ pending │ ───────────────────▶ │ sent │ ─────────────────▶ │ acknowledged │
    └────┬────┘                      └──┬───┘                    └──────┬───────┘
         │ rider cancels                │ closed                        │ closed
         ▼                              ▼                               ▼
    ┌───────────┐                  ┌──────────┐ ◀───────────────────────┘
    │ cancelled │                  │ resolved │
    └───────────┘                  └──────────┘

Status only moves forward. Exactly one of {cancelled_at, sent_at} is ever
set. `cancelled` and `resolved` are closed: location updates are ignored.

═══════════════════════════════════════════════════════════════════════════
SEVERITY THRESHOLDS
═══════════════════════════════════════════════════════════════════════════

    Magnitude       Severity
    ─────────       ────────
    ≥ 80            critical
    60 – 79.99      severe
    40 – 59.99      moderate
    < 40            minor
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enumerations
# ═══════════════════════════════════════════════════════════════════════════

class AlertStatus(str, Enum):
    PENDING      = "pending"        # countdown running, rider may cancel
    CANCELLED    = "cancelled"      # rider called it off before expiry
    SENT         = "sent"           # contacts were notified
    ACKNOWLEDGED = "acknowledged"   # a contact confirmed they are responding
    RESOLVED     = "resolved"       # incident closed


class Severity(str, Enum):
    MINOR    = "minor"
    MODERATE = "moderate"
    SEVERE   = "severe"
    CRITICAL = "critical"


class DeliveryMethod(str, Enum):
    PUSH         = "push"
    SMS          = "sms"
    PUSH_AND_SMS = "push+sms"
    NONE         = "none"


class DeliveryOutcome(str, Enum):
    SENT    = "sent"
    FAILED  = "failed"
    SKIPPED = "skipped"


class LiveEvent(str, Enum):
    """Event names emitted over live connections."""
    AUTHENTICATED           = "authenticated"
    ERROR                   = "error"
    # to the rider
    COUNTDOWN_STARTED       = "alert:countdown_started"
    ALERT_SENT              = "alert:sent"
    ALERT_ACKNOWLEDGED      = "alert:acknowledged"
    ALERT_RESOLVED          = "alert:resolved"
    # to emergency contacts
    EMERGENCY_ALERT         = "emergency:alert"
    EMERGENCY_CANCELLED     = "emergency:cancelled"
    EMERGENCY_LOCATION      = "emergency:location_update"
    CONTACT_LOCATION        = "contact:location_update"
    # replies on the requesting socket
    EMERGENCY_CREATED       = "emergency:created"
    EMERGENCY_ACKNOWLEDGED  = "emergency:acknowledged"


# Forward-only transitions
ALLOWED_TRANSITIONS: Dict[AlertStatus, FrozenSet[AlertStatus]] = {
    AlertStatus.PENDING: frozenset({AlertStatus.SENT, AlertStatus.CANCELLED}),
    AlertStatus.SENT: frozenset({AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED}),
    AlertStatus.ACKNOWLEDGED: frozenset({AlertStatus.RESOLVED}),
    AlertStatus.CANCELLED: frozenset(),
    AlertStatus.RESOLVED: frozenset(),
}

CLOSED_STATUSES: FrozenSet[AlertStatus] = frozenset(
    {AlertStatus.CANCELLED, AlertStatus.RESOLVED}
)

# (threshold, severity), checked top-down
SEVERITY_THRESHOLDS = (
    (80.0, Severity.CRITICAL),
    (60.0, Severity.SEVERE),
    (40.0, Severity.MODERATE),
)


def compute_severity(magnitude: float) -> Severity:
    """Map a crash magnitude score to a Severity."""
    for threshold, severity in SEVERITY_THRESHOLDS:
        if magnitude >= threshold:
            return severity
    return Severity.MINOR


def can_transition(current: AlertStatus, new: AlertStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_alert_id() -> str:
    return f"ALR-{uuid.uuid4().hex[:12].upper()}"


def generate_account_id() -> str:
    return f"ACC-{uuid.uuid4().hex[:12].upper()}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    """Accept datetimes or ISO strings; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


# ═══════════════════════════════════════════════════════════════════════════
# Accounts
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class EmergencyContact:
    """A person the rider wants notified. Embedded in the owner's Account."""
    phone_number: str
    name: str = ""
    relationship: str = ""
    is_primary: bool = False
    added_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phone_number": self.phone_number,
            "name": self.name,
            "relationship": self.relationship,
            "is_primary": self.is_primary,
            "added_at": _iso(self.added_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmergencyContact":
        return cls(
            phone_number=data["phone_number"],
            name=data.get("name") or "",
            relationship=data.get("relationship") or "",
            is_primary=bool(data.get("is_primary", False)),
            added_at=_parse_dt(data.get("added_at")) or _now(),
        )


@dataclass
class AccountSettings:
    auto_send_alert: bool = True
    countdown_seconds: int = 15
    share_location: bool = True
    sms_fallback: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "auto_send_alert": self.auto_send_alert,
            "countdown_seconds": self.countdown_seconds,
            "share_location": self.share_location,
            "sms_fallback": self.sms_fallback,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AccountSettings":
        data = data or {}
        defaults = cls()
        return cls(
            auto_send_alert=bool(data.get("auto_send_alert", defaults.auto_send_alert)),
            countdown_seconds=int(data.get("countdown_seconds", defaults.countdown_seconds)),
            share_location=bool(data.get("share_location", defaults.share_location)),
            sms_fallback=bool(data.get("sms_fallback", defaults.sms_fallback)),
        )


@dataclass
class Account:
    """
    A registered rider / contact.

    Attributes
    ----------
    account_id : str
        Stable identity.
    phone_number : str
        Unique, E.164.
    push_token : str | None
        FCM registration token; None when the app never registered one.
    emergency_contacts : list of EmergencyContact
        Ordered; at most one is primary.
    presence_handle : str | None
        Live connection handle while connected.
    """
    phone_number: str
    name: str = ""
    account_id: str = field(default_factory=generate_account_id)
    push_token: Optional[str] = None
    emergency_contacts: List[EmergencyContact] = field(default_factory=list)
    settings: AccountSettings = field(default_factory=AccountSettings)
    presence_handle: Optional[str] = None
    is_online: bool = False
    last_seen: datetime = field(default_factory=_now)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def to_dict(self, *, include_private: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "account_id": self.account_id,
            "phone_number": self.phone_number,
            "name": self.name,
            "emergency_contacts": [c.to_dict() for c in self.emergency_contacts],
            "settings": self.settings.to_dict(),
            "is_online": self.is_online,
            "last_seen": _iso(self.last_seen),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_private:
            d["push_token"] = self.push_token
            d["presence_handle"] = self.presence_handle
        else:
            d["has_push_token"] = self.push_token is not None
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Account":
        return cls(
            account_id=data["account_id"],
            phone_number=data["phone_number"],
            name=data.get("name") or "",
            push_token=data.get("push_token"),
            emergency_contacts=[
                EmergencyContact.from_dict(c) for c in data.get("emergency_contacts") or []
            ],
            settings=AccountSettings.from_dict(data.get("settings")),
            presence_handle=data.get("presence_handle"),
            is_online=bool(data.get("is_online", False)),
            last_seen=_parse_dt(data.get("last_seen")) or _now(),
            created_at=_parse_dt(data.get("created_at")) or _now(),
            updated_at=_parse_dt(data.get("updated_at")) or _now(),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Alerts
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class AlertLocation:
    latitude: float
    longitude: float
    address: str = ""
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "address": self.address,
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlertLocation":
        return cls(
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            address=data.get("address") or "",
            timestamp=_parse_dt(data.get("timestamp")) or _now(),
        )


@dataclass(frozen=True)
class DeliveryRecord:
    """Outcome of notifying one emergency contact for one alert. Never mutated."""
    contact_phone_number: str
    method: DeliveryMethod
    status: DeliveryOutcome
    sent_at: datetime = field(default_factory=_now)
    error: Optional[str] = None

    @classmethod
    def skipped(cls, phone_number: str, reason: str) -> "DeliveryRecord":
        return cls(
            contact_phone_number=phone_number,
            method=DeliveryMethod.NONE,
            status=DeliveryOutcome.SKIPPED,
            error=reason,
        )

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryOutcome.SENT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contact_phone_number": self.contact_phone_number,
            "method": self.method.value,
            "status": self.status.value,
            "sent_at": _iso(self.sent_at),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeliveryRecord":
        return cls(
            contact_phone_number=data["contact_phone_number"],
            method=DeliveryMethod(data.get("method") or DeliveryMethod.NONE.value),
            status=DeliveryOutcome(data["status"]),
            sent_at=_parse_dt(data.get("sent_at")) or _now(),
            error=data.get("error"),
        )


@dataclass
class Alert:
    """
    One reported possible-accident incident.

    `owner_phone` is denormalised so alert history survives account changes.
    """
    owner_id: str
    owner_phone: str
    location: AlertLocation
    magnitude: float = 0.0
    severity: Severity = Severity.MINOR
    alert_id: str = field(default_factory=generate_alert_id)
    status: AlertStatus = AlertStatus.PENDING
    countdown_started_at: datetime = field(default_factory=_now)
    cancelled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    notifications_sent: List[DeliveryRecord] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "owner_id": self.owner_id,
            "owner_phone": self.owner_phone,
            "severity": self.severity.value,
            "magnitude": self.magnitude,
            "location": self.location.to_dict(),
            "status": self.status.value,
            "countdown_started_at": _iso(self.countdown_started_at),
            "cancelled_at": _iso(self.cancelled_at),
            "sent_at": _iso(self.sent_at),
            "acknowledged_at": _iso(self.acknowledged_at),
            "acknowledged_by": self.acknowledged_by,
            "resolved_at": _iso(self.resolved_at),
            "notifications_sent": [r.to_dict() for r in self.notifications_sent],
            "metadata": self.metadata,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Alert":
        return cls(
            alert_id=data["alert_id"],
            owner_id=data["owner_id"],
            owner_phone=data["owner_phone"],
            severity=Severity(data["severity"]),
            magnitude=float(data.get("magnitude") or 0.0),
            location=AlertLocation.from_dict(data["location"]),
            status=AlertStatus(data["status"]),
            countdown_started_at=_parse_dt(data.get("countdown_started_at")) or _now(),
            cancelled_at=_parse_dt(data.get("cancelled_at")),
            sent_at=_parse_dt(data.get("sent_at")),
            acknowledged_at=_parse_dt(data.get("acknowledged_at")),
            acknowledged_by=data.get("acknowledged_by"),
            resolved_at=_parse_dt(data.get("resolved_at")),
            notifications_sent=[
                DeliveryRecord.from_dict(r) for r in data.get("notifications_sent") or []
            ],
            metadata=dict(data.get("metadata") or {}),
            created_at=_parse_dt(data.get("created_at")) or _now(),
            updated_at=_parse_dt(data.get("updated_at")) or _now(),
        )
