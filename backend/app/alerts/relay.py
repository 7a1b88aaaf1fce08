"""
relay.py — Location Relay.

Fans a rider's location sample out to the emergency contacts that are
connected right now. Best effort: nothing is persisted, nothing retried,
an offline contact simply misses the sample.

    alert in flight   → emergency:location_update  (carries alertId)
    plain sharing     → contact:location_update    (only if share_location)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.alerts.channels.live import LiveTransport
from backend.app.alerts.directory import ContactDirectory
from backend.app.alerts.models import Account, EmergencyContact, LiveEvent
from backend.app.alerts.presence import PresenceRegistry

logger = logging.getLogger(__name__)


class LocationRelay:

    def __init__(
        self,
        directory: ContactDirectory,
        presence: PresenceRegistry,
        live: LiveTransport,
    ) -> None:
        self._directory = directory
        self._presence = presence
        self._live = live

    async def broadcast_location(
        self,
        owner: Account,
        latitude: float,
        longitude: float,
        alert_id: Optional[str] = None,
        *,
        timestamp: Optional[datetime] = None,
    ) -> int:
        """
        Emit the sample to every present, non-self contact.

        Returns
        -------
        int
            Number of contacts the event was delivered to.
        """
        if alert_id is None and not owner.settings.share_location:
            return 0

        event = LiveEvent.EMERGENCY_LOCATION if alert_id else LiveEvent.CONTACT_LOCATION
        payload: Dict[str, Any] = {
            "userId": owner.account_id,
            "phoneNumber": owner.phone_number,
            "name": owner.name,
            "latitude": latitude,
            "longitude": longitude,
            "timestamp": (timestamp or datetime.now(timezone.utc)).isoformat(),
        }
        if alert_id:
            payload["alertId"] = alert_id

        contacts = self._directory.contacts_of(owner)
        if not contacts:
            return 0
        results = await asyncio.gather(
            *(self._relay_one(owner, c, event, payload) for c in contacts)
        )
        delivered = sum(results)
        logger.debug(
            "Location from %s relayed to %d/%d contact(s)",
            owner.account_id, delivered, len(contacts),
            extra={"account_id": owner.account_id, "alert_id": alert_id,
                   "recipient_count": delivered},
        )
        return delivered

    async def _relay_one(
        self,
        owner: Account,
        contact: EmergencyContact,
        event: LiveEvent,
        payload: Dict[str, Any],
    ) -> bool:
        try:
            account = await self._directory.resolve(contact.phone_number)
            if account is None or account.account_id == owner.account_id:
                return False
            handle = self._presence.handle_for(account.account_id)
            if handle is None:
                return False
            return await self._live.emit(handle, event, payload)
        except Exception as exc:
            logger.warning(
                "Location relay to %s failed: %s", contact.phone_number, exc,
                extra={"account_id": owner.account_id, "contact": contact.phone_number},
            )
            return False
