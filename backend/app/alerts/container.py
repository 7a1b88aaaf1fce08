"""
container.py — Wires the alert engine's collaborators together.

Everything the engine shares across alerts (store, directory, presence,
transports) is created once here and passed in explicitly; there are no
module-level singletons inside the engine itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from backend.app.alerts.alert_service import AlertLifecycleManager
from backend.app.alerts.channels import build_push_transport, build_sms_transport
from backend.app.alerts.channels.live import WebSocketHub
from backend.app.alerts.channels.push import PushTransport
from backend.app.alerts.channels.sms_gateway import SmsTransport
from backend.app.alerts.directory import ContactDirectory
from backend.app.alerts.dispatcher import NotificationDispatcher
from backend.app.alerts.presence import PresenceRegistry
from backend.app.alerts.relay import LocationRelay
from backend.app.alerts.store import AlertStore, InMemoryStore
from backend.app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class AlertServices:
    settings: Settings
    store: AlertStore
    directory: ContactDirectory
    presence: PresenceRegistry
    hub: WebSocketHub
    push: PushTransport
    sms: SmsTransport
    dispatcher: NotificationDispatcher
    relay: LocationRelay
    alerts: AlertLifecycleManager

    async def close(self) -> None:
        await self.alerts.shutdown()
        await self.push.close()
        await self.sms.close()
        await self.store.close()


def _build_store(settings: Settings) -> AlertStore:
    if settings.STORE_BACKEND == "sql":
        from backend.app.alerts.sql_store import SqlAlchemyStore
        from backend.app.core.database import get_session_factory

        return SqlAlchemyStore(get_session_factory())
    if settings.STORE_BACKEND == "memory":
        return InMemoryStore()
    raise ValueError(f"Unknown store backend: {settings.STORE_BACKEND}")


def build_services(
    settings: Optional[Settings] = None,
    *,
    store: Optional[AlertStore] = None,
    push: Optional[PushTransport] = None,
    sms: Optional[SmsTransport] = None,
    hub: Optional[WebSocketHub] = None,
) -> AlertServices:
    """Assemble the engine; explicit collaborators override the configured ones."""
    settings = settings or get_settings()
    store = store or _build_store(settings)
    push = push or build_push_transport(settings)
    sms = sms or build_sms_transport(settings)

    directory = ContactDirectory(store, max_contacts=settings.MAX_EMERGENCY_CONTACTS)
    presence = PresenceRegistry(store)
    hub = hub or WebSocketHub()
    dispatcher = NotificationDispatcher(directory, presence, push, sms, hub, settings)
    relay = LocationRelay(directory, presence, hub)
    alerts = AlertLifecycleManager(
        store, directory, presence, dispatcher, relay, push, hub, settings,
    )

    logger.info(
        "Alert services ready (store=%s, push=%s, sms=%s)",
        type(store).__name__, type(push).__name__, type(sms).__name__,
    )
    return AlertServices(
        settings=settings,
        store=store,
        directory=directory,
        presence=presence,
        hub=hub,
        push=push,
        sms=sms,
        dispatcher=dispatcher,
        relay=relay,
        alerts=alerts,
    )
