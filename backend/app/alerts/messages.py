"""
messages.py — Notification content builders.

Pure functions: Alert + owner Account in, text/payload out. Kept apart
from the transports so the wording can be tested without any I/O.

Emergency SMS layout:

    EMERGENCY ALERT!

    Asha may have been in an accident!

    Severity: critical
    Time: 19 Oct 2026, 09:41 PM
    Location: https://maps.google.com/?q=12.9716,77.5946

    Please check on them immediately!

    - Safe Ride Alert System
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

from backend.app.alerts.models import Account, Alert

EMERGENCY_TITLE = "🚨 EMERGENCY ALERT!"
CANCELLED_TITLE = "✅ Alert Cancelled"


@dataclass(frozen=True)
class PushMessage:
    title: str
    body: str
    data: Dict[str, str]


@lru_cache(maxsize=8)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def maps_link(latitude: Optional[float], longitude: Optional[float]) -> str:
    if latitude is None or longitude is None:
        return "Location unavailable"
    return f"https://maps.google.com/?q={latitude},{longitude}"


def format_local_time(moment: datetime, timezone_name: str) -> str:
    """e.g. '19 Oct 2026, 09:41 PM' in the given IANA zone."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(_zone(timezone_name)).strftime("%d %b %Y, %I:%M %p")


def alert_summary(alert: Alert, owner: Account) -> Dict[str, Any]:
    """Fields shared by the push data map and the live emergency event."""
    return {
        "alertId": alert.alert_id,
        "severity": alert.severity.value,
        "magnitude": alert.magnitude,
        "latitude": alert.location.latitude,
        "longitude": alert.location.longitude,
        "userPhoneNumber": owner.phone_number,
        "userName": owner.name or "Unknown",
    }


def emergency_push(alert: Alert, owner: Account) -> PushMessage:
    data = {"type": "emergency_alert"}
    data.update({k: str(v) for k, v in alert_summary(alert, owner).items()})
    return PushMessage(
        title=EMERGENCY_TITLE,
        body=(
            f"{owner.name or 'Someone'} may have been in an accident. "
            "Immediate assistance needed!"
        ),
        data=data,
    )


def cancellation_push(alert: Alert, owner: Account) -> PushMessage:
    return PushMessage(
        title=CANCELLED_TITLE,
        body=f"{owner.name or 'User'} has cancelled the emergency alert. They are safe.",
        data={"type": "alert_cancelled", "alertId": alert.alert_id},
    )


def emergency_sms(
    alert: Alert,
    owner: Account,
    *,
    timezone_name: str = "Asia/Kolkata",
    signature: str = "- Safe Ride Alert System",
    now: Optional[datetime] = None,
) -> str:
    moment = now or datetime.now(timezone.utc)
    return (
        "EMERGENCY ALERT!\n\n"
        f"{owner.name or 'Someone'} may have been in an accident!\n\n"
        f"Severity: {alert.severity.value}\n"
        f"Time: {format_local_time(moment, timezone_name)}\n"
        f"Location: {maps_link(alert.location.latitude, alert.location.longitude)}\n\n"
        "Please check on them immediately!\n\n"
        f"{signature}"
    )
