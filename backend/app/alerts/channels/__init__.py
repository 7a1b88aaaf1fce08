"""
channels — Per-channel delivery backends.

    push         — Firebase Cloud Messaging (or simulation)
    sms_gateway  — Twilio REST (or simulation)
    live         — WebSocket hub for real-time events

Transports raise DeliveryError on failure (live returns False instead).
Fallback and outcome logic lives in the dispatcher.
"""

from __future__ import annotations

from backend.app.alerts.channels.live import LiveTransport, WebSocketHub
from backend.app.alerts.channels.push import (
    FirebasePushTransport,
    PushTransport,
    SimulatedPushTransport,
)
from backend.app.alerts.channels.sms_gateway import (
    SimulatedSmsTransport,
    SmsTransport,
    TwilioSmsTransport,
)
from backend.app.core.config import Settings


def build_push_transport(settings: Settings) -> PushTransport:
    if settings.PUSH_PROVIDER == "firebase":
        return FirebasePushTransport(
            settings.FIREBASE_CREDENTIALS_PATH,
            settings.FIREBASE_PROJECT_ID,
            android_channel_id=settings.PUSH_ANDROID_CHANNEL_ID,
        )
    if settings.PUSH_PROVIDER == "simulation":
        return SimulatedPushTransport()
    raise ValueError(f"Unknown push provider: {settings.PUSH_PROVIDER}")


def build_sms_transport(settings: Settings) -> SmsTransport:
    if settings.SMS_PROVIDER == "twilio":
        return TwilioSmsTransport(
            settings.TWILIO_ACCOUNT_SID,
            settings.TWILIO_AUTH_TOKEN,
            settings.TWILIO_FROM_NUMBER,
            api_base=settings.TWILIO_API_BASE,
            timeout_seconds=settings.SMS_TIMEOUT_SECONDS,
        )
    if settings.SMS_PROVIDER == "simulation":
        return SimulatedSmsTransport()
    raise ValueError(f"Unknown SMS provider: {settings.SMS_PROVIDER}")


__all__ = [
    "FirebasePushTransport",
    "LiveTransport",
    "PushTransport",
    "SimulatedPushTransport",
    "SimulatedSmsTransport",
    "SmsTransport",
    "TwilioSmsTransport",
    "WebSocketHub",
    "build_push_transport",
    "build_sms_transport",
]
