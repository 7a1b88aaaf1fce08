"""
Pydantic schemas for the accounts and alerts API.

Separated from the route handlers so they are reusable across
the codebase (WebSocket handlers, tests).

Coordinates are deliberately loose here (Optional, unbounded): the
lifecycle manager owns coordinate validation so HTTP and WebSocket
callers get the same ValidationError.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/accounts (register or log in)."""
    phone_number: str = Field(..., examples=["+919876543210"])
    name: str = Field("", max_length=100, examples=["Asha"])
    push_token: Optional[str] = Field(None, description="FCM registration token")

    @field_validator("phone_number")
    @classmethod
    def strip_phone(cls, v: str) -> str:
        return v.strip()


class ProfileUpdateRequest(BaseModel):
    """Partial profile update; empty fields keep their value."""
    name: Optional[str] = Field(None, max_length=100, examples=["Asha"])
    push_token: Optional[str] = Field(None, description="FCM registration token")


class PushTokenRequest(BaseModel):
    push_token: Optional[str] = Field(
        None, description="FCM registration token; null clears it",
    )


class SettingsUpdateRequest(BaseModel):
    """Partial update; omitted fields keep their value."""
    auto_send_alert: Optional[bool] = None
    countdown_seconds: Optional[int] = Field(None, examples=[15])
    share_location: Optional[bool] = None
    sms_fallback: Optional[bool] = None


class ContactRequest(BaseModel):
    phone_number: str = Field(..., examples=["+919812345678"])
    name: str = Field("", max_length=100, examples=["Ravi"])
    relationship: str = Field("", max_length=50, examples=["brother"])
    is_primary: bool = False


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

class CreateAlertRequest(BaseModel):
    """Request body for POST /api/v1/alerts."""
    magnitude: float = Field(0.0, ge=0, examples=[72.5], description="Crash magnitude score")
    latitude: Optional[float] = Field(None, examples=[12.9716])
    longitude: Optional[float] = Field(None, examples=[77.5946])
    address: str = Field("", examples=["MG Road, Bengaluru"])
    device_info: Optional[Dict[str, Any]] = None
    bluetooth_device: Optional[Dict[str, Any]] = None
    raw_sensor_data: Optional[Any] = None

    def location(self) -> Dict[str, Any]:
        return {"latitude": self.latitude, "longitude": self.longitude, "address": self.address}

    def device_metadata(self) -> Dict[str, Any]:
        return {
            key: value
            for key, value in (
                ("device_info", self.device_info),
                ("bluetooth_device", self.bluetooth_device),
                ("raw_sensor_data", self.raw_sensor_data),
            )
            if value is not None
        }


class LocationUpdateRequest(BaseModel):
    latitude: Optional[float] = Field(None, examples=[12.9721])
    longitude: Optional[float] = Field(None, examples=[77.5950])


class AlertHistoryResponse(BaseModel):
    """Paginated alert history."""
    alerts: List[Dict[str, Any]]
    total: int
    page: int
    total_pages: int
