"""
alert_service.py — Alert Lifecycle Manager.

Owns the alert state machine, the countdown, and the orchestration of
notification fan-out when the countdown expires.

═══════════════════════════════════════════════════════════════════════════
ORCHESTRATION FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  create_alert       │  validate location, compute severity,
    │                     │  persist `pending`, emit countdown_started
    └─────────┬───────────┘
              │  countdown task (one per alert, keyed by alert id)
              ▼
    ┌─────────────────────┐        ┌─────────────────────┐
    │  expire_countdown   │   vs   │  cancel_alert       │
    │  CAS pending→sent   │        │  CAS pending→cancel │
    └─────────┬───────────┘        └─────────┬───────────┘
              │ (exactly one wins)           │
              ▼                              ▼
    ┌─────────────────────┐        ┌─────────────────────┐
    │  scatter/gather     │        │  best-effort        │
    │  dispatch per       │        │  cancellation       │
    │  non-self contact   │        │  notices            │
    └─────────┬───────────┘        └─────────────────────┘
              │
              ▼
    ┌─────────────────────┐
    │  persist ALL        │  one write, then emit alert:sent
    │  DeliveryRecords    │
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  acknowledge /      │  sent → acknowledged → resolved
    │  resolve            │
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
RACE SAFETY
═══════════════════════════════════════════════════════════════════════════

The countdown task is never cancelled when the rider cancels. Both paths
issue a conditional write ("status = X where status = pending") and the
store decides the winner; the loser observes False and either no-ops
(countdown) or raises InvalidStateError (cancel). Timer bookkeeping is
only kept so shutdown can stop sleeping tasks.

Acknowledgment policy
    Only a `sent` alert can be acknowledged; acknowledging an already
    acknowledged alert returns it unchanged. With
    ACK_REQUIRE_EMERGENCY_CONTACT enabled the acknowledger must be one of
    the owner's emergency contacts.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Coroutine, Dict, List, Mapping, Optional, Set

from backend.app.alerts import messages
from backend.app.alerts.channels.live import LiveTransport
from backend.app.alerts.channels.push import PushTransport
from backend.app.alerts.directory import ContactDirectory, same_number
from backend.app.alerts.dispatcher import NotificationDispatcher
from backend.app.alerts.models import (
    Account,
    Alert,
    AlertLocation,
    AlertStatus,
    LiveEvent,
    compute_severity,
)
from backend.app.alerts.presence import PresenceRegistry
from backend.app.alerts.relay import LocationRelay
from backend.app.alerts.store import AlertStore
from backend.app.core.config import Settings, get_settings
from backend.app.core.errors import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _coordinate(value: Any, name: str, bound: float) -> float:
    if value is None or value == "":
        raise ValidationError("Location is required", field=name)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number", field=name) from None
    if math.isnan(number) or not -bound <= number <= bound:
        raise ValidationError(f"{name} must be within ±{bound:g}", field=name)
    return number


def validate_coordinates(latitude: Any, longitude: Any) -> tuple:
    return (
        _coordinate(latitude, "latitude", 90.0),
        _coordinate(longitude, "longitude", 180.0),
    )


@dataclass
class AlertPage:
    alerts: List[Alert]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class AlertLifecycleManager:
    """
    Parameters
    ----------
    store : AlertStore
    directory : ContactDirectory
    presence : PresenceRegistry
    dispatcher : NotificationDispatcher
    relay : LocationRelay
    push : PushTransport
        Used for cancellation notices.
    live : LiveTransport
        Events to the rider and to contacts.
    settings : Settings | None
    """

    def __init__(
        self,
        store: AlertStore,
        directory: ContactDirectory,
        presence: PresenceRegistry,
        dispatcher: NotificationDispatcher,
        relay: LocationRelay,
        push: PushTransport,
        live: LiveTransport,
        settings: Optional[Settings] = None,
    ) -> None:
        self._store = store
        self._directory = directory
        self._presence = presence
        self._dispatcher = dispatcher
        self._relay = relay
        self._push = push
        self._live = live
        self._settings = settings or get_settings()
        self._timers: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

    # ═══════════════════════════════════════════════════════════════════
    # Creation & countdown
    # ═══════════════════════════════════════════════════════════════════

    async def create_alert(
        self,
        owner_id: str,
        magnitude: Any,
        location: Mapping[str, Any],
        device_metadata: Optional[Mapping[str, Any]] = None,
    ) -> Alert:
        """
        Persist a `pending` alert and arm its countdown.

        Returns immediately; the send path runs after the owner's
        countdown (default 15 s) unless the alert is cancelled first.
        """
        location = location or {}
        latitude, longitude = validate_coordinates(
            location.get("latitude"), location.get("longitude"),
        )
        try:
            magnitude = float(magnitude or 0.0)
        except (TypeError, ValueError):
            raise ValidationError("magnitude must be a number", field="magnitude") from None

        owner = await self._directory.get_account(owner_id)
        alert = await self._store.create_alert(Alert(
            owner_id=owner.account_id,
            owner_phone=owner.phone_number,
            magnitude=magnitude,
            severity=compute_severity(magnitude),
            location=AlertLocation(
                latitude=latitude,
                longitude=longitude,
                address=location.get("address") or "",
            ),
            metadata=dict(device_metadata or {}),
        ))

        countdown = self.countdown_for(owner)
        logger.info(
            "Alert %s created (%s, magnitude %.1f), countdown %ss",
            alert.alert_id, alert.severity.value, magnitude, countdown,
            extra={"alert_id": alert.alert_id, "account_id": owner.account_id},
        )
        await self._emit_to_account(owner.account_id, LiveEvent.COUNTDOWN_STARTED, {
            "alertId": alert.alert_id,
            "countdown": countdown,
        })
        self._schedule_countdown(alert.alert_id, countdown)
        return alert

    def countdown_for(self, owner: Account) -> float:
        seconds = owner.settings.countdown_seconds
        return seconds if seconds and seconds > 0 else self._settings.DEFAULT_COUNTDOWN_SECONDS

    def _schedule_countdown(self, alert_id: str, delay: float) -> None:
        task = asyncio.create_task(
            self._run_countdown(alert_id, delay), name=f"countdown-{alert_id}",
        )
        self._timers[alert_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._timers.get(alert_id) is done:
                del self._timers[alert_id]

        task.add_done_callback(_forget)

    async def _run_countdown(self, alert_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.expire_countdown(alert_id)
        except Exception:
            logger.exception(
                "Countdown for %s failed", alert_id, extra={"alert_id": alert_id},
            )

    async def expire_countdown(self, alert_id: str) -> Optional[Alert]:
        """
        Send path. No-op (returns None) unless this call moves the alert
        out of `pending`.
        """
        won = await self._store.transition_status(
            alert_id, {AlertStatus.PENDING}, AlertStatus.SENT, sent_at=_now(),
        )
        if not won:
            logger.debug("Countdown for %s expired after state change — no-op", alert_id,
                         extra={"alert_id": alert_id})
            return None

        alert = await self._require_alert(alert_id)
        owner = await self._directory.get_account(alert.owner_id)
        contacts = self._directory.contacts_of(owner)

        start = asyncio.get_running_loop().time()
        records = await self._dispatcher.dispatch_all(contacts, alert, owner)
        await self._store.record_notifications(alert_id, records)

        delivered = sum(1 for r in records if r.delivered)
        logger.info(
            "Alert %s sent: %d/%d contact(s) reached",
            alert_id, delivered, len(records),
            extra={
                "alert_id": alert_id,
                "account_id": owner.account_id,
                "recipient_count": len(records),
                "duration_ms": round((asyncio.get_running_loop().time() - start) * 1000, 1),
            },
        )
        await self._emit_to_account(owner.account_id, LiveEvent.ALERT_SENT, {
            "alertId": alert_id,
            "notificationsSent": len(records),
        })
        return await self._require_alert(alert_id)

    # ═══════════════════════════════════════════════════════════════════
    # Rider / contact actions
    # ═══════════════════════════════════════════════════════════════════

    async def cancel_alert(self, alert_id: str, requester_id: str) -> Alert:
        alert = await self._owned_alert(alert_id, requester_id)
        if alert.status != AlertStatus.PENDING:
            raise InvalidStateError(alert_id, alert.status.value, "cancelled")

        won = await self._store.transition_status(
            alert_id, {AlertStatus.PENDING}, AlertStatus.CANCELLED, cancelled_at=_now(),
        )
        if not won:
            current = await self._require_alert(alert_id)
            raise InvalidStateError(alert_id, current.status.value, "cancelled")

        cancelled = await self._require_alert(alert_id)
        logger.info("Alert %s cancelled by owner", alert_id,
                    extra={"alert_id": alert_id, "account_id": requester_id})
        self._spawn(self._notify_cancelled(cancelled), f"cancel-notices-{alert_id}")
        return cancelled

    async def acknowledge_alert(self, alert_id: str, acknowledger_phone: str) -> Alert:
        alert = await self._require_alert(alert_id)

        if self._settings.ACK_REQUIRE_EMERGENCY_CONTACT:
            owner = await self._directory.get_account(alert.owner_id)
            if not any(
                same_number(c.phone_number, acknowledger_phone)
                for c in self._directory.contacts_of(owner)
            ):
                raise ForbiddenError(
                    "Only an emergency contact of the rider can acknowledge this alert",
                    alert_id=alert_id,
                )

        if alert.status == AlertStatus.ACKNOWLEDGED:
            return alert
        if alert.status != AlertStatus.SENT:
            raise InvalidStateError(alert_id, alert.status.value, "acknowledged")

        won = await self._store.transition_status(
            alert_id, {AlertStatus.SENT}, AlertStatus.ACKNOWLEDGED,
            acknowledged_at=_now(), acknowledged_by=acknowledger_phone,
        )
        current = await self._require_alert(alert_id)
        if not won:
            if current.status == AlertStatus.ACKNOWLEDGED:
                return current
            raise InvalidStateError(alert_id, current.status.value, "acknowledged")

        logger.info("Alert %s acknowledged by %s", alert_id, acknowledger_phone,
                    extra={"alert_id": alert_id, "contact": acknowledger_phone})
        await self._emit_to_account(current.owner_id, LiveEvent.ALERT_ACKNOWLEDGED, {
            "alertId": alert_id,
            "acknowledgedBy": acknowledger_phone,
        })
        return current

    async def update_alert_location(
        self,
        alert_id: str,
        latitude: Any,
        longitude: Any,
        requester_id: Optional[str] = None,
    ) -> Alert:
        """
        Overwrite the alert's coordinates and relay them to present
        contacts. Returns the alert unchanged once cancelled or resolved.
        """
        latitude, longitude = validate_coordinates(latitude, longitude)
        if requester_id is not None:
            alert = await self._owned_alert(alert_id, requester_id)
        else:
            alert = await self._require_alert(alert_id)
        if alert.is_closed:
            return alert

        sampled_at = _now()
        updated = await self._store.update_location(alert_id, latitude, longitude, sampled_at)
        if not updated:
            return await self._require_alert(alert_id)

        owner = await self._directory.get_account(alert.owner_id)
        await self._relay.broadcast_location(
            owner, latitude, longitude, alert_id=alert_id, timestamp=sampled_at,
        )
        return await self._require_alert(alert_id)

    async def resolve_alert(self, alert_id: str, requester_id: str) -> Alert:
        """Owner closes a sent or acknowledged alert."""
        alert = await self._owned_alert(alert_id, requester_id)
        open_states = {AlertStatus.SENT, AlertStatus.ACKNOWLEDGED}
        if alert.status not in open_states:
            raise InvalidStateError(alert_id, alert.status.value, "resolved")

        won = await self._store.transition_status(
            alert_id, open_states, AlertStatus.RESOLVED, resolved_at=_now(),
        )
        current = await self._require_alert(alert_id)
        if not won:
            raise InvalidStateError(alert_id, current.status.value, "resolved")

        logger.info("Alert %s resolved", alert_id,
                    extra={"alert_id": alert_id, "account_id": requester_id})
        await self._emit_to_account(current.owner_id, LiveEvent.ALERT_RESOLVED, {
            "alertId": alert_id,
        })
        return current

    # ═══════════════════════════════════════════════════════════════════
    # Queries
    # ═══════════════════════════════════════════════════════════════════

    async def get_alert(self, alert_id: str) -> Alert:
        return await self._require_alert(alert_id)

    async def list_sent(
        self,
        owner_id: str,
        *,
        status: Optional[AlertStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> AlertPage:
        page, limit = max(page, 1), max(limit, 1)
        alerts = await self._store.list_alerts(
            owner_id=owner_id, status=status, limit=limit, offset=(page - 1) * limit,
        )
        total = await self._store.count_alerts(owner_id=owner_id, status=status)
        return AlertPage(alerts, total, page, limit)

    async def list_received(
        self,
        account_id: str,
        *,
        status: Optional[AlertStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> AlertPage:
        """Alerts that notified this account's number, excluding its own."""
        account = await self._directory.get_account(account_id)
        page, limit = max(page, 1), max(limit, 1)
        query = dict(
            notified_phone=account.phone_number,
            exclude_owner_id=account.account_id,
            status=status,
        )
        alerts = await self._store.list_alerts(
            **query, limit=limit, offset=(page - 1) * limit,
        )
        total = await self._store.count_alerts(**query)
        return AlertPage(alerts, total, page, limit)

    async def list_all(
        self,
        account_id: str,
        *,
        page: int = 1,
        limit: int = 20,
    ) -> AlertPage:
        """
        Sent and received alerts merged newest first.

        Each side is read up to the end of the requested page, merged, then
        sliced, so pages stay consistent across the two sources.
        """
        account = await self._directory.get_account(account_id)
        page, limit = max(page, 1), max(limit, 1)
        window = page * limit
        received_query = dict(
            notified_phone=account.phone_number, exclude_owner_id=account.account_id,
        )
        sent = await self._store.list_alerts(owner_id=account.account_id, limit=window)
        received = await self._store.list_alerts(**received_query, limit=window)
        merged = sorted(sent + received, key=lambda a: a.created_at, reverse=True)
        total = (
            await self._store.count_alerts(owner_id=account.account_id)
            + await self._store.count_alerts(**received_query)
        )
        return AlertPage(merged[window - limit:window], total, page, limit)

    # ═══════════════════════════════════════════════════════════════════
    # Background work
    # ═══════════════════════════════════════════════════════════════════

    @property
    def pending_countdowns(self) -> int:
        return len(self._timers)

    async def drain(self) -> None:
        """Wait for in-flight cancellation notices."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop sleeping countdowns; their alerts stay `pending` in the store."""
        timers = list(self._timers.values())
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        await self.drain()
        if timers:
            logger.info("Stopped %d pending countdown(s)", len(timers))

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _notify_cancelled(self, alert: Alert) -> None:
        try:
            owner = await self._directory.get_account(alert.owner_id)
        except NotFoundError:
            logger.exception("Cancellation notices for %s skipped", alert.alert_id,
                             extra={"alert_id": alert.alert_id})
            return
        contacts = self._directory.contacts_of(owner)
        message = messages.cancellation_push(alert, owner)
        results = await asyncio.gather(
            *(self._cancel_notice(c.phone_number, owner, alert, message) for c in contacts),
            return_exceptions=True,
        )
        for contact, result in zip(contacts, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Cancellation notice to %s failed: %s", contact.phone_number, result,
                    extra={"alert_id": alert.alert_id, "contact": contact.phone_number},
                )

    async def _cancel_notice(
        self,
        phone: str,
        owner: Account,
        alert: Alert,
        message: messages.PushMessage,
    ) -> None:
        account = await self._directory.resolve(phone)
        if account is None or account.account_id == owner.account_id:
            return
        if account.push_token:
            try:
                await self._push.send(
                    account.push_token, message.title, message.body, message.data,
                )
            except Exception as exc:
                logger.warning(
                    "Cancellation push to %s failed: %s", phone, exc,
                    extra={"alert_id": alert.alert_id, "contact": phone, "channel": "push"},
                )
        handle = self._presence.handle_for(account.account_id)
        if handle is not None:
            await self._live.emit(handle, LiveEvent.EMERGENCY_CANCELLED, {
                "alertId": alert.alert_id,
            })

    # ── Helpers ──

    async def _require_alert(self, alert_id: str) -> Alert:
        alert = await self._store.get_alert(alert_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        return alert

    async def _owned_alert(self, alert_id: str, requester_id: str) -> Alert:
        alert = await self._store.get_alert(alert_id)
        if alert is None or alert.owner_id != requester_id:
            raise NotFoundError("Alert", alert_id=alert_id)
        return alert

    async def _emit_to_account(
        self, account_id: str, event: LiveEvent, payload: Dict[str, Any],
    ) -> bool:
        handle = self._presence.handle_for(account_id)
        if handle is None:
            return False
        return await self._live.emit(handle, event, payload)
