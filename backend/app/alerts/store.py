"""
store.py — Persistence boundary for accounts and alerts.

The lifecycle manager never mutates a stored alert in place. Every state
change goes through a conditional write so that concurrent callers (the
countdown task and a rider's cancel request, two contacts acknowledging)
are decided by the store, not by in-process timing:

    transition_status(alert_id, expected={PENDING}, new=SENT, sent_at=...)

        UPDATE alerts SET status = 'sent', sent_at = ...
         WHERE alert_id = ? AND status IN ('pending')

    → True  when exactly one row changed
    → False when the alert had already left the expected state

Two implementations:
    InMemoryStore   — development and tests (this module)
    SqlAlchemyStore — PostgreSQL / SQLite (sql_store.py)
"""

from __future__ import annotations

import abc
import asyncio
import copy
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from backend.app.alerts.models import (
    CLOSED_STATUSES,
    Account,
    Alert,
    AlertStatus,
    DeliveryRecord,
)
from backend.app.core.errors import ValidationError

logger = logging.getLogger(__name__)

# Columns a status transition may stamp alongside the new status
TRANSITION_FIELDS = frozenset({
    "sent_at", "cancelled_at", "acknowledged_at", "acknowledged_by", "resolved_at",
})


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _check_transition_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Unsupported transition fields: {sorted(unknown)}")


class AlertStore(abc.ABC):
    """Async document store for Account and Alert."""

    # ── Accounts ──

    @abc.abstractmethod
    async def create_account(self, account: Account) -> Account:
        """Insert a new account. Raises ValidationError on duplicate phone."""

    @abc.abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]:
        ...

    @abc.abstractmethod
    async def find_account_by_phone(self, phone_number: str) -> Optional[Account]:
        ...

    @abc.abstractmethod
    async def save_account(self, account: Account) -> Account:
        """Overwrite profile fields, contacts and settings of an existing account."""

    @abc.abstractmethod
    async def update_presence(
        self,
        account_id: str,
        handle: Optional[str],
        is_online: bool,
        last_seen: datetime,
    ) -> bool:
        ...

    @abc.abstractmethod
    async def touch_last_seen(self, account_id: str, last_seen: datetime) -> bool:
        """Refresh last_seen only; handle and online flag are left alone."""

    # ── Alerts ──

    @abc.abstractmethod
    async def create_alert(self, alert: Alert) -> Alert:
        ...

    @abc.abstractmethod
    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        ...

    @abc.abstractmethod
    async def transition_status(
        self,
        alert_id: str,
        expected: Iterable[AlertStatus],
        new: AlertStatus,
        **fields: Any,
    ) -> bool:
        """Atomically move an alert to `new` if its status is one of `expected`."""

    @abc.abstractmethod
    async def record_notifications(
        self, alert_id: str, records: Sequence[DeliveryRecord]
    ) -> bool:
        """Persist the full list of delivery records in a single write."""

    @abc.abstractmethod
    async def update_location(
        self,
        alert_id: str,
        latitude: float,
        longitude: float,
        timestamp: datetime,
    ) -> bool:
        """Overwrite coordinates unless the alert is cancelled or resolved."""

    @abc.abstractmethod
    async def list_alerts(
        self,
        *,
        owner_id: Optional[str] = None,
        notified_phone: Optional[str] = None,
        exclude_owner_id: Optional[str] = None,
        status: Optional[AlertStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Alert]:
        """Newest first."""

    @abc.abstractmethod
    async def count_alerts(
        self,
        *,
        owner_id: Optional[str] = None,
        notified_phone: Optional[str] = None,
        exclude_owner_id: Optional[str] = None,
        status: Optional[AlertStatus] = None,
    ) -> int:
        ...

    async def close(self) -> None:
        """Release resources (no-op by default)."""


# ═══════════════════════════════════════════════════════════════════════════
# In-Memory Store (development / tests)
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryStore(AlertStore):
    """
    Dict-backed store. A single asyncio.Lock makes every write atomic;
    reads and writes hand out deep copies so callers never share state
    with the store, just as with a real document database.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, Account] = {}
        self._alerts: Dict[str, Alert] = {}
        self._lock = asyncio.Lock()

    # ── Accounts ──

    async def create_account(self, account: Account) -> Account:
        async with self._lock:
            for existing in self._accounts.values():
                if existing.phone_number == account.phone_number:
                    raise ValidationError(
                        "Phone number already registered",
                        field="phone_number",
                    )
            self._accounts[account.account_id] = copy.deepcopy(account)
        return copy.deepcopy(account)

    async def get_account(self, account_id: str) -> Optional[Account]:
        account = self._accounts.get(account_id)
        return copy.deepcopy(account) if account else None

    async def find_account_by_phone(self, phone_number: str) -> Optional[Account]:
        for account in self._accounts.values():
            if account.phone_number == phone_number:
                return copy.deepcopy(account)
        return None

    async def save_account(self, account: Account) -> Account:
        async with self._lock:
            current = self._accounts.get(account.account_id)
            if current is None:
                raise ValueError(f"Unknown account {account.account_id}")
            saved = copy.deepcopy(account)
            # presence is owned by update_presence
            saved.presence_handle = current.presence_handle
            saved.is_online = current.is_online
            saved.last_seen = current.last_seen
            saved.updated_at = _now()
            self._accounts[account.account_id] = saved
        return copy.deepcopy(saved)

    async def update_presence(
        self,
        account_id: str,
        handle: Optional[str],
        is_online: bool,
        last_seen: datetime,
    ) -> bool:
        async with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return False
            account.presence_handle = handle
            account.is_online = is_online
            account.last_seen = last_seen
            return True

    async def touch_last_seen(self, account_id: str, last_seen: datetime) -> bool:
        async with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return False
            account.last_seen = last_seen
            return True

    # ── Alerts ──

    async def create_alert(self, alert: Alert) -> Alert:
        async with self._lock:
            self._alerts[alert.alert_id] = copy.deepcopy(alert)
        return copy.deepcopy(alert)

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        return copy.deepcopy(alert) if alert else None

    async def transition_status(
        self,
        alert_id: str,
        expected: Iterable[AlertStatus],
        new: AlertStatus,
        **fields: Any,
    ) -> bool:
        _check_transition_fields(fields)
        expected = set(expected)
        async with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.status not in expected:
                return False
            alert.status = new
            for name, value in fields.items():
                setattr(alert, name, value)
            alert.updated_at = _now()
            return True

    async def record_notifications(
        self, alert_id: str, records: Sequence[DeliveryRecord]
    ) -> bool:
        async with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return False
            alert.notifications_sent = list(records)
            alert.updated_at = _now()
            return True

    async def update_location(
        self,
        alert_id: str,
        latitude: float,
        longitude: float,
        timestamp: datetime,
    ) -> bool:
        async with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.status in CLOSED_STATUSES:
                return False
            alert.location.latitude = latitude
            alert.location.longitude = longitude
            alert.location.timestamp = timestamp
            alert.updated_at = _now()
            return True

    def _matching(
        self,
        owner_id: Optional[str],
        notified_phone: Optional[str],
        exclude_owner_id: Optional[str],
        status: Optional[AlertStatus],
    ) -> List[Alert]:
        matches = []
        for alert in self._alerts.values():
            if owner_id is not None and alert.owner_id != owner_id:
                continue
            if exclude_owner_id is not None and alert.owner_id == exclude_owner_id:
                continue
            if status is not None and alert.status != status:
                continue
            if notified_phone is not None and not any(
                r.contact_phone_number == notified_phone for r in alert.notifications_sent
            ):
                continue
            matches.append(alert)
        matches.sort(key=lambda a: a.created_at, reverse=True)
        return matches

    async def list_alerts(
        self,
        *,
        owner_id: Optional[str] = None,
        notified_phone: Optional[str] = None,
        exclude_owner_id: Optional[str] = None,
        status: Optional[AlertStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Alert]:
        matches = self._matching(owner_id, notified_phone, exclude_owner_id, status)
        return [copy.deepcopy(a) for a in matches[offset: offset + limit]]

    async def count_alerts(
        self,
        *,
        owner_id: Optional[str] = None,
        notified_phone: Optional[str] = None,
        exclude_owner_id: Optional[str] = None,
        status: Optional[AlertStatus] = None,
    ) -> int:
        return len(self._matching(owner_id, notified_phone, exclude_owner_id, status))
