"""
dispatcher.py — Notification Dispatcher.

For one alert and one emergency contact: pick channels, attempt delivery,
produce exactly one DeliveryRecord. Never raises.

═══════════════════════════════════════════════════════════════════════════
DELIVERY FLOW (per contact)
═══════════════════════════════════════════════════════════════════════════

    ┌──────────────────────┐
    │ 1. Self-exclusion    │  contact number == owner number      → skipped
    │                      │  resolved account == owner account   → skipped
    └─────────┬────────────┘
              │
              ▼
    ┌──────────────────────┐
    │ 2. Resolve contact   │  Contact Directory (lookup error → unresolved)
    └─────────┬────────────┘
              │
              ▼
    ┌──────────────────────┐
    │ 3. Push              │  only if the resolved account has a token
    │ 4. SMS               │  always, independent of the push outcome
    │ 5. Live event        │  only if present; supplementary, not counted
    └─────────┬────────────┘
              │
              ▼
    ┌──────────────────────┐
    │ 6. Outcome           │  see table
    └──────────────────────┘

═══════════════════════════════════════════════════════════════════════════
OUTCOME TABLE
═══════════════════════════════════════════════════════════════════════════

    Push attempted   Push ok   SMS ok     Record
    ──────────────   ───────   ──────     ──────────────────────────────
    yes              yes       yes        sent    push+sms
    yes              yes       no         sent    push
    yes              no        yes        sent    sms
    yes              no        no         failed  push+sms  "push: …; sms: …"
    no               —         yes        sent    sms
    no               —         no         failed  sms       "sms: …"

Push and SMS are parallel redundant paths, not primary/fallback: a push
failure never suppresses the SMS and vice versa.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

from backend.app.alerts import messages
from backend.app.alerts.channels.live import LiveTransport
from backend.app.alerts.channels.push import PushTransport
from backend.app.alerts.channels.sms_gateway import SmsTransport
from backend.app.alerts.directory import ContactDirectory, same_number
from backend.app.alerts.models import (
    Account,
    Alert,
    DeliveryMethod,
    DeliveryOutcome,
    DeliveryRecord,
    EmergencyContact,
    LiveEvent,
)
from backend.app.alerts.presence import PresenceRegistry
from backend.app.core.config import Settings, get_settings
from backend.app.core.errors import DeliveryError

logger = logging.getLogger(__name__)


def _failure_reason(exc: Exception) -> str:
    if isinstance(exc, DeliveryError):
        return exc.reason or exc.message
    return str(exc) or type(exc).__name__


class NotificationDispatcher:
    """
    Parameters
    ----------
    directory : ContactDirectory
        Resolves contact numbers to accounts.
    presence : PresenceRegistry
        Live handles of connected accounts.
    push, sms : PushTransport, SmsTransport
        Delivery transports.
    live : LiveTransport
        Real-time event transport.
    settings : Settings | None
        SMS time zone and signature.
    """

    def __init__(
        self,
        directory: ContactDirectory,
        presence: PresenceRegistry,
        push: PushTransport,
        sms: SmsTransport,
        live: LiveTransport,
        settings: Optional[Settings] = None,
    ) -> None:
        self._directory = directory
        self._presence = presence
        self._push = push
        self._sms = sms
        self._live = live
        self._settings = settings or get_settings()

    async def dispatch(
        self,
        contact: EmergencyContact,
        alert: Alert,
        owner: Account,
    ) -> DeliveryRecord:
        """Notify one contact; every failure ends up in the returned record."""
        phone = contact.phone_number

        if same_number(phone, owner.phone_number):
            logger.info("Skipping %s — contact is the alert sender", phone,
                        extra={"alert_id": alert.alert_id, "contact": phone})
            return DeliveryRecord.skipped(phone, "Contact is the alert sender")

        account = await self._resolve(phone, alert)
        if account is not None and account.account_id == owner.account_id:
            logger.info("Skipping %s — resolves to the alert sender", phone,
                        extra={"alert_id": alert.alert_id, "contact": phone})
            return DeliveryRecord.skipped(phone, "Contact account matches sender")

        errors: List[str] = []
        push_attempted = bool(account is not None and account.push_token)
        push_ok = False
        if push_attempted:
            push_ok = await self._send_push(account, alert, owner, errors)

        sms_ok = await self._send_sms(phone, alert, owner, errors)

        if account is not None:
            await self._emit_live(account, contact, alert, owner)

        return self._outcome(phone, push_attempted, push_ok, sms_ok, errors)

    async def dispatch_all(
        self,
        contacts: List[EmergencyContact],
        alert: Alert,
        owner: Account,
    ) -> List[DeliveryRecord]:
        """Scatter/gather over contacts; order of records follows `contacts`."""
        if not contacts:
            return []
        return list(await asyncio.gather(
            *(self._dispatch_guarded(c, alert, owner) for c in contacts)
        ))

    # ── Internals ──

    async def _dispatch_guarded(
        self, contact: EmergencyContact, alert: Alert, owner: Account,
    ) -> DeliveryRecord:
        try:
            return await self.dispatch(contact, alert, owner)
        except Exception as exc:
            # one contact must never abort the batch
            logger.exception("Dispatch to %s crashed", contact.phone_number,
                             extra={"alert_id": alert.alert_id})
            return DeliveryRecord(
                contact_phone_number=contact.phone_number,
                method=DeliveryMethod.NONE,
                status=DeliveryOutcome.FAILED,
                error=_failure_reason(exc),
            )

    async def _resolve(self, phone: str, alert: Alert) -> Optional[Account]:
        try:
            return await self._directory.resolve(phone)
        except Exception as exc:
            logger.warning(
                "Directory lookup for %s failed (%s) — SMS only", phone, exc,
                extra={"alert_id": alert.alert_id, "contact": phone},
            )
            return None

    async def _send_push(
        self, account: Account, alert: Alert, owner: Account, errors: List[str],
    ) -> bool:
        message = messages.emergency_push(alert, owner)
        try:
            await self._push.send(account.push_token, message.title, message.body, message.data)
        except Exception as exc:
            errors.append(f"push: {_failure_reason(exc)}")
            logger.warning(
                "Push failed for %s: %s", account.phone_number, exc,
                extra={"alert_id": alert.alert_id, "channel": "push",
                       "contact": account.phone_number},
            )
            return False
        return True

    async def _send_sms(
        self, phone: str, alert: Alert, owner: Account, errors: List[str],
    ) -> bool:
        text = messages.emergency_sms(
            alert, owner,
            timezone_name=self._settings.SMS_TIMEZONE,
            signature=self._settings.SMS_SIGNATURE,
        )
        try:
            await self._sms.send(phone, text)
        except Exception as exc:
            errors.append(f"sms: {_failure_reason(exc)}")
            logger.warning(
                "SMS failed for %s: %s", phone, exc,
                extra={"alert_id": alert.alert_id, "channel": "sms", "contact": phone},
            )
            return False
        return True

    async def _emit_live(
        self, account: Account, contact: EmergencyContact, alert: Alert, owner: Account,
    ) -> None:
        handle = self._presence.handle_for(account.account_id)
        if handle is None:
            return
        payload = messages.alert_summary(alert, owner)
        payload["contactName"] = contact.name
        try:
            await self._live.emit(handle, LiveEvent.EMERGENCY_ALERT, payload)
        except Exception as exc:
            logger.warning("Live alert to %s failed: %s", account.phone_number, exc,
                           extra={"alert_id": alert.alert_id, "channel": "live"})

    @staticmethod
    def _outcome(
        phone: str,
        push_attempted: bool,
        push_ok: bool,
        sms_ok: bool,
        errors: List[str],
    ) -> DeliveryRecord:
        now = datetime.now(timezone.utc)
        if push_ok and sms_ok:
            method, status = DeliveryMethod.PUSH_AND_SMS, DeliveryOutcome.SENT
        elif push_ok:
            method, status = DeliveryMethod.PUSH, DeliveryOutcome.SENT
        elif sms_ok:
            method, status = DeliveryMethod.SMS, DeliveryOutcome.SENT
        else:
            method = DeliveryMethod.PUSH_AND_SMS if push_attempted else DeliveryMethod.SMS
            status = DeliveryOutcome.FAILED

        return DeliveryRecord(
            contact_phone_number=phone,
            method=method,
            status=status,
            sent_at=now,
            error="; ".join(errors) if errors else None,
        )
