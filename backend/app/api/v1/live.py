"""
WebSocket route: real-time channel for riders and their contacts.

    WS /ws

Messages are JSON objects in both directions:

    client → server   {"event": "authenticate", "data": {"accountId": "ACC-…"}}
    server → client   {"event": "authenticated", "data": {...}}

Client events:
    authenticate           accountId or phoneNumber → attaches presence
    location:update        latitude, longitude, alertId?
    emergency:create       same fields as POST /api/v1/alerts
    emergency:cancel       alertId
    emergency:acknowledge  alertId

Every failure is answered with an `error` event; the socket stays open.
Disconnect detaches presence for this connection's handle only.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as SchemaValidationError

from backend.app.alerts.alert_service import validate_coordinates
from backend.app.alerts.container import AlertServices
from backend.app.alerts.models import Account, LiveEvent
from backend.app.api.schemas import CreateAlertRequest
from backend.app.core.errors import SafeRideError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["live"])


class LiveSession:
    """State of one WebSocket connection."""

    def __init__(self, services: AlertServices, handle: str) -> None:
        self.services = services
        self.handle = handle
        self.account_id: Optional[str] = None
        self.phone_number: Optional[str] = None

    async def reply(self, event: LiveEvent, payload: Dict[str, Any]) -> None:
        await self.services.hub.emit(self.handle, event, payload)

    async def error(self, message: str, code: str = "ERROR") -> None:
        await self.reply(LiveEvent.ERROR, {"message": message, "code": code})

    async def handle_message(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            await self.error("Malformed message", "BAD_MESSAGE")
            return
        if not isinstance(message, dict) or not isinstance(message.get("event"), str):
            await self.error("Message must carry an event name", "BAD_MESSAGE")
            return

        event = message["event"]
        data = message.get("data") or {}
        handler = _HANDLERS.get(event)
        if handler is None:
            await self.error(f"Unknown event: {event}", "UNKNOWN_EVENT")
            return
        if event != "authenticate" and self.account_id is None:
            await self.error("Not authenticated", "UNAUTHENTICATED")
            return

        try:
            await handler(self, data)
        except SafeRideError as exc:
            logger.warning("Live %s rejected: %s", event, exc.message,
                           extra={"account_id": self.account_id})
            await self.error(exc.message, exc.error_code)
        except SchemaValidationError as exc:
            await self.error(str(exc), "VALIDATION_ERROR")
        except Exception:
            logger.exception("Live %s failed", event, extra={"account_id": self.account_id})
            await self.error(f"Failed to handle {event}")

    async def close(self) -> None:
        self.services.hub.unregister(self.handle)
        if self.account_id is not None:
            await self.services.presence.detach(self.account_id, self.handle)

    # ── Event handlers ──

    async def on_authenticate(self, data: Dict[str, Any]) -> None:
        directory = self.services.directory
        account: Optional[Account] = None
        if data.get("accountId"):
            account = await directory.get_account(data["accountId"])
        elif data.get("phoneNumber"):
            account = await directory.resolve(data["phoneNumber"])
            if account is None:
                await self.error("Account not found", "NOT_FOUND")
                return
        else:
            await self.error("accountId or phoneNumber required", "VALIDATION_ERROR")
            return

        if self.account_id is not None and self.account_id != account.account_id:
            await self.services.presence.detach(self.account_id, self.handle)
        await self.services.presence.attach(account.account_id, self.handle)
        self.account_id = account.account_id
        self.phone_number = account.phone_number
        await self.reply(LiveEvent.AUTHENTICATED, {
            "accountId": account.account_id,
            "phoneNumber": account.phone_number,
            "name": account.name,
        })

    async def on_location_update(self, data: Dict[str, Any]) -> None:
        alert_id = data.get("alertId")
        if alert_id:
            await self.services.alerts.update_alert_location(
                alert_id, data.get("latitude"), data.get("longitude"),
                requester_id=self.account_id,
            )
            return
        latitude, longitude = validate_coordinates(data.get("latitude"), data.get("longitude"))
        owner = await self.services.directory.get_account(self.account_id)
        await self.services.relay.broadcast_location(owner, latitude, longitude)

    async def on_emergency_create(self, data: Dict[str, Any]) -> None:
        request = CreateAlertRequest.model_validate(data)
        alert = await self.services.alerts.create_alert(
            self.account_id,
            request.magnitude,
            request.location(),
            request.device_metadata(),
        )
        owner = await self.services.directory.get_account(self.account_id)
        await self.reply(LiveEvent.EMERGENCY_CREATED, {
            "alertId": alert.alert_id,
            "countdown": self.services.alerts.countdown_for(owner),
        })

    async def on_emergency_cancel(self, data: Dict[str, Any]) -> None:
        alert = await self.services.alerts.cancel_alert(data.get("alertId", ""), self.account_id)
        await self.reply(LiveEvent.EMERGENCY_CANCELLED, {"alertId": alert.alert_id})

    async def on_emergency_acknowledge(self, data: Dict[str, Any]) -> None:
        alert = await self.services.alerts.acknowledge_alert(
            data.get("alertId", ""), self.phone_number,
        )
        await self.reply(LiveEvent.EMERGENCY_ACKNOWLEDGED, {"alertId": alert.alert_id})


_HANDLERS = {
    "authenticate": LiveSession.on_authenticate,
    "location:update": LiveSession.on_location_update,
    "emergency:create": LiveSession.on_emergency_create,
    "emergency:cancel": LiveSession.on_emergency_cancel,
    "emergency:acknowledge": LiveSession.on_emergency_acknowledge,
}


@router.websocket("/ws")
async def live_socket(websocket: WebSocket):
    services: AlertServices = websocket.app.state.services
    await websocket.accept()
    session = LiveSession(services, services.hub.register(websocket))
    logger.debug("Live connection %s opened", session.handle[:8])
    try:
        while True:
            await session.handle_message(await websocket.receive_text())
    except WebSocketDisconnect:
        logger.debug("Live connection %s closed", session.handle[:8])
    finally:
        await session.close()
