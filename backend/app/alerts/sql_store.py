"""
sql_store.py — SQLAlchemy-backed AlertStore.

Tables:
    accounts             — profile, embedded contacts (JSON), settings (JSON),
                           presence columns
    alerts               — one row per alert, flat location columns
    alert_notifications  — delivery records, written together per alert

The compare-and-swap used by the lifecycle is a single UPDATE whose WHERE
clause names the expected statuses; the driver's rowcount tells the caller
whether it won.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.alerts.models import (
    CLOSED_STATUSES,
    Account,
    AccountSettings,
    Alert,
    AlertLocation,
    AlertStatus,
    DeliveryMethod,
    DeliveryOutcome,
    DeliveryRecord,
    EmergencyContact,
    Severity,
)
from backend.app.alerts.store import AlertStore, _check_transition_fields
from backend.app.core.database import Base
from backend.app.core.errors import ValidationError

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ═══════════════════════════════════════════════════════════════════════════
# ORM Tables
# ═══════════════════════════════════════════════════════════════════════════

class AccountRow(Base):
    __tablename__ = "accounts"

    account_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    phone_number: Mapped[str] = mapped_column(String(20), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(120), default="")
    push_token: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    emergency_contacts: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    settings: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    presence_handle: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_online: Mapped[bool] = mapped_column(Boolean, default=False)
    last_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class NotificationRow(Base):
    __tablename__ = "alert_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alert_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("alerts.alert_id", ondelete="CASCADE"), index=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0)
    contact_phone_number: Mapped[str] = mapped_column(String(20), index=True)
    method: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(16))
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class AlertRow(Base):
    __tablename__ = "alerts"

    alert_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(32), index=True)
    owner_phone: Mapped[str] = mapped_column(String(20), index=True)
    severity: Mapped[str] = mapped_column(String(16))
    magnitude: Mapped[float] = mapped_column(Float, default=0.0)
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    address: Mapped[str] = mapped_column(String(255), default="")
    location_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(16), index=True)
    countdown_started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    device_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    notifications: Mapped[List[NotificationRow]] = relationship(
        lazy="selectin",
        order_by=NotificationRow.position,
        cascade="all, delete-orphan",
    )


# ═══════════════════════════════════════════════════════════════════════════
# Row ↔ Dataclass Conversion
# ═══════════════════════════════════════════════════════════════════════════

def _account_from_row(row: AccountRow) -> Account:
    return Account(
        account_id=row.account_id,
        phone_number=row.phone_number,
        name=row.name or "",
        push_token=row.push_token,
        emergency_contacts=[
            EmergencyContact.from_dict(c) for c in row.emergency_contacts or []
        ],
        settings=AccountSettings.from_dict(row.settings),
        presence_handle=row.presence_handle,
        is_online=row.is_online,
        last_seen=_aware(row.last_seen),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _alert_from_row(row: AlertRow) -> Alert:
    return Alert(
        alert_id=row.alert_id,
        owner_id=row.owner_id,
        owner_phone=row.owner_phone,
        severity=Severity(row.severity),
        magnitude=row.magnitude,
        location=AlertLocation(
            latitude=row.latitude,
            longitude=row.longitude,
            address=row.address or "",
            timestamp=_aware(row.location_timestamp),
        ),
        status=AlertStatus(row.status),
        countdown_started_at=_aware(row.countdown_started_at),
        cancelled_at=_aware(row.cancelled_at),
        sent_at=_aware(row.sent_at),
        acknowledged_at=_aware(row.acknowledged_at),
        acknowledged_by=row.acknowledged_by,
        resolved_at=_aware(row.resolved_at),
        notifications_sent=[
            DeliveryRecord(
                contact_phone_number=n.contact_phone_number,
                method=DeliveryMethod(n.method),
                status=DeliveryOutcome(n.status),
                sent_at=_aware(n.sent_at),
                error=n.error,
            )
            for n in row.notifications
        ],
        metadata=dict(row.device_metadata or {}),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


# ═══════════════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════════════

class SqlAlchemyStore(AlertStore):
    """AlertStore over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ── Accounts ──

    async def create_account(self, account: Account) -> Account:
        row = AccountRow(
            account_id=account.account_id,
            phone_number=account.phone_number,
            name=account.name,
            push_token=account.push_token,
            emergency_contacts=[c.to_dict() for c in account.emergency_contacts],
            settings=account.settings.to_dict(),
            presence_handle=account.presence_handle,
            is_online=account.is_online,
            last_seen=account.last_seen,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )
        async with self._session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ValidationError(
                    "Phone number already registered", field="phone_number",
                ) from exc
        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        async with self._session_factory() as session:
            row = await session.get(AccountRow, account_id)
            return _account_from_row(row) if row else None

    async def find_account_by_phone(self, phone_number: str) -> Optional[Account]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AccountRow).where(AccountRow.phone_number == phone_number)
            )
            row = result.scalar_one_or_none()
            return _account_from_row(row) if row else None

    async def save_account(self, account: Account) -> Account:
        async with self._session_factory() as session:
            row = await session.get(AccountRow, account.account_id)
            if row is None:
                raise ValueError(f"Unknown account {account.account_id}")
            row.phone_number = account.phone_number
            row.name = account.name
            row.push_token = account.push_token
            row.emergency_contacts = [c.to_dict() for c in account.emergency_contacts]
            row.settings = account.settings.to_dict()
            row.updated_at = _now()
            saved = _account_from_row(row)
            await session.commit()
        return saved

    async def update_presence(
        self,
        account_id: str,
        handle: Optional[str],
        is_online: bool,
        last_seen: datetime,
    ) -> bool:
        stmt = (
            update(AccountRow)
            .where(AccountRow.account_id == account_id)
            .values(presence_handle=handle, is_online=is_online, last_seen=last_seen)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def touch_last_seen(self, account_id: str, last_seen: datetime) -> bool:
        stmt = (
            update(AccountRow)
            .where(AccountRow.account_id == account_id)
            .values(last_seen=last_seen)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    # ── Alerts ──

    async def create_alert(self, alert: Alert) -> Alert:
        row = AlertRow(
            alert_id=alert.alert_id,
            owner_id=alert.owner_id,
            owner_phone=alert.owner_phone,
            severity=alert.severity.value,
            magnitude=alert.magnitude,
            latitude=alert.location.latitude,
            longitude=alert.location.longitude,
            address=alert.location.address,
            location_timestamp=alert.location.timestamp,
            status=alert.status.value,
            countdown_started_at=alert.countdown_started_at,
            cancelled_at=alert.cancelled_at,
            sent_at=alert.sent_at,
            acknowledged_at=alert.acknowledged_at,
            acknowledged_by=alert.acknowledged_by,
            resolved_at=alert.resolved_at,
            device_metadata=alert.metadata,
            created_at=alert.created_at,
            updated_at=alert.updated_at,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
        return alert

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AlertRow).where(AlertRow.alert_id == alert_id)
            )
            row = result.scalar_one_or_none()
            return _alert_from_row(row) if row else None

    async def transition_status(
        self,
        alert_id: str,
        expected: Iterable[AlertStatus],
        new: AlertStatus,
        **fields: Any,
    ) -> bool:
        _check_transition_fields(fields)
        stmt = (
            update(AlertRow)
            .where(
                AlertRow.alert_id == alert_id,
                AlertRow.status.in_([s.value for s in expected]),
            )
            .values(status=new.value, updated_at=_now(), **fields)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def record_notifications(
        self, alert_id: str, records: Sequence[DeliveryRecord]
    ) -> bool:
        async with self._session_factory() as session:
            touched = await session.execute(
                update(AlertRow)
                .where(AlertRow.alert_id == alert_id)
                .values(updated_at=_now())
                .execution_options(synchronize_session=False)
            )
            if touched.rowcount != 1:
                await session.rollback()
                return False
            await session.execute(
                delete(NotificationRow).where(NotificationRow.alert_id == alert_id)
            )
            session.add_all([
                NotificationRow(
                    alert_id=alert_id,
                    position=i,
                    contact_phone_number=r.contact_phone_number,
                    method=r.method.value,
                    status=r.status.value,
                    sent_at=r.sent_at,
                    error=r.error,
                )
                for i, r in enumerate(records)
            ])
            await session.commit()
        return True

    async def update_location(
        self,
        alert_id: str,
        latitude: float,
        longitude: float,
        timestamp: datetime,
    ) -> bool:
        stmt = (
            update(AlertRow)
            .where(
                AlertRow.alert_id == alert_id,
                AlertRow.status.not_in([s.value for s in CLOSED_STATUSES]),
            )
            .values(
                latitude=latitude,
                longitude=longitude,
                location_timestamp=timestamp,
                updated_at=_now(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    @staticmethod
    def _filters(
        owner_id: Optional[str],
        notified_phone: Optional[str],
        exclude_owner_id: Optional[str],
        status: Optional[AlertStatus],
    ) -> list:
        clauses = []
        if owner_id is not None:
            clauses.append(AlertRow.owner_id == owner_id)
        if exclude_owner_id is not None:
            clauses.append(AlertRow.owner_id != exclude_owner_id)
        if status is not None:
            clauses.append(AlertRow.status == status.value)
        if notified_phone is not None:
            clauses.append(
                AlertRow.alert_id.in_(
                    select(NotificationRow.alert_id).where(
                        NotificationRow.contact_phone_number == notified_phone
                    )
                )
            )
        return clauses

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
        stmt = (
            select(AlertRow)
            .where(*self._filters(owner_id, notified_phone, exclude_owner_id, status))
            .order_by(AlertRow.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_alert_from_row(row) for row in result.scalars().all()]

    async def count_alerts(
        self,
        *,
        owner_id: Optional[str] = None,
        notified_phone: Optional[str] = None,
        exclude_owner_id: Optional[str] = None,
        status: Optional[AlertStatus] = None,
    ) -> int:
        stmt = (
            select(func.count())
            .select_from(AlertRow)
            .where(*self._filters(owner_id, notified_phone, exclude_owner_id, status))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())
