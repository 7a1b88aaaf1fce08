"""
push.py — Mobile push channel via Firebase Cloud Messaging.

Delivery mechanism:
    • firebase-admin `messaging.send` with the contact's registration token
    • Android: high priority, `emergency_alerts` notification channel
    • iOS (APNs): default sound, badge 1
    • Data payload is map<string, string> (FCM rejects non-string values)

The firebase-admin client is synchronous, so each send runs in a worker
thread to keep the event loop free for other alerts' countdowns.

Any failure (invalid token, quota, network) is raised as DeliveryError;
the dispatcher converts it into a DeliveryRecord.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, messaging

from backend.app.core.errors import DeliveryError

logger = logging.getLogger(__name__)

_FIREBASE_APP_NAME = "safe-ride-alert"


def _stringify(data: Dict[str, Any]) -> Dict[str, str]:
    return {key: "" if value is None else str(value) for key, value in data.items()}


class PushTransport(abc.ABC):
    """send(token, title, body, data) → provider message id, or DeliveryError."""

    channel = "push"

    @abc.abstractmethod
    async def send(
        self,
        token: str,
        title: str,
        body: str,
        data: Dict[str, str],
    ) -> str:
        ...

    async def close(self) -> None:
        pass


class SimulatedPushTransport(PushTransport):
    """Logs notifications instead of sending them (development default)."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def send(
        self,
        token: str,
        title: str,
        body: str,
        data: Dict[str, str],
    ) -> str:
        message_id = f"sim-{uuid.uuid4().hex[:12]}"
        logger.info(
            "[PUSH] %s → %s…: %s",
            data.get("type", "notification"), token[:12], title,
        )
        self.sent.append({
            "token": token,
            "title": title,
            "body": body,
            "data": _stringify(data),
            "message_id": message_id,
        })
        return message_id


class FirebasePushTransport(PushTransport):
    """
    Firebase Cloud Messaging transport.

    Parameters
    ----------
    credentials_path : str | None
        Service-account JSON. Falls back to Application Default Credentials.
    project_id : str | None
        Overrides the project id found in the credentials.
    android_channel_id : str
        Notification channel registered by the Android app.
    """

    def __init__(
        self,
        credentials_path: Optional[str] = None,
        project_id: Optional[str] = None,
        *,
        android_channel_id: str = "emergency_alerts",
    ) -> None:
        self._credentials_path = credentials_path
        self._project_id = project_id
        self._android_channel_id = android_channel_id
        self._app: Optional[firebase_admin.App] = None

    def _get_app(self) -> firebase_admin.App:
        if self._app is None:
            try:
                self._app = firebase_admin.get_app(_FIREBASE_APP_NAME)
            except ValueError:
                cred = (
                    credentials.Certificate(self._credentials_path)
                    if self._credentials_path
                    else credentials.ApplicationDefault()
                )
                options = {"projectId": self._project_id} if self._project_id else None
                self._app = firebase_admin.initialize_app(
                    cred, options, name=_FIREBASE_APP_NAME,
                )
                logger.info("Firebase app initialised (%s)", self._project_id or "default project")
        return self._app

    def build_message(
        self,
        token: str,
        title: str,
        body: str,
        data: Dict[str, str],
    ) -> messaging.Message:
        payload = _stringify(data)
        payload["timestamp"] = datetime.now(timezone.utc).isoformat()
        return messaging.Message(
            token=token,
            notification=messaging.Notification(title=title, body=body),
            data=payload,
            android=messaging.AndroidConfig(
                priority="high",
                notification=messaging.AndroidNotification(
                    sound="default",
                    channel_id=self._android_channel_id,
                    priority="high",
                ),
            ),
            apns=messaging.APNSConfig(
                payload=messaging.APNSPayload(
                    aps=messaging.Aps(sound="default", badge=1),
                ),
            ),
        )

    async def send(
        self,
        token: str,
        title: str,
        body: str,
        data: Dict[str, str],
    ) -> str:
        message = self.build_message(token, title, body, data)
        try:
            app = self._get_app()
            message_id = await asyncio.to_thread(messaging.send, message, app=app)
        except Exception as exc:
            # firebase-admin raises several unrelated exception families
            raise DeliveryError("push", str(exc), token_prefix=token[:12]) from exc

        logger.info("[PUSH/FCM] sent %s → %s…", message_id, token[:12])
        return message_id
