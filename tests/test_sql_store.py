"""
test_sql_store.py — SqlAlchemyStore against in-memory SQLite (aiosqlite).

Run with:
    pytest tests/test_sql_store.py -v
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from backend.app.alerts.container import build_services
from backend.app.alerts.models import (
    Account,
    Alert,
    AlertLocation,
    AlertStatus,
    DeliveryMethod,
    DeliveryOutcome,
    DeliveryRecord,
    EmergencyContact,
    Severity,
)
from backend.app.alerts.sql_store import SqlAlchemyStore
from backend.app.core.database import init_db
from backend.app.core.errors import ValidationError

from tests.conftest import RIDER_PHONE, make_account

BROTHER = "+911111111111"


@pytest.fixture
async def sql_store():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield SqlAlchemyStore(async_sessionmaker(engine, expire_on_commit=False))
    await engine.dispose()


def _make_alert(owner_id="ACC-1", **overrides) -> Alert:
    values = dict(
        owner_id=owner_id,
        owner_phone=RIDER_PHONE,
        location=AlertLocation(latitude=12.97, longitude=77.59),
        magnitude=70.0,
        severity=Severity.SEVERE,
    )
    values.update(overrides)
    return Alert(**values)


class TestAccounts:

    async def test_create_and_lookup(self, sql_store):
        account = Account(
            phone_number=RIDER_PHONE, name="Asha",
            emergency_contacts=[EmergencyContact(phone_number=BROTHER, is_primary=True)],
        )
        await sql_store.create_account(account)

        by_id = await sql_store.get_account(account.account_id)
        by_phone = await sql_store.find_account_by_phone(RIDER_PHONE)
        assert by_id.account_id == by_phone.account_id == account.account_id
        assert by_id.emergency_contacts[0].phone_number == BROTHER
        assert by_id.emergency_contacts[0].is_primary
        assert by_id.settings.countdown_seconds == 15
        assert by_id.created_at.tzinfo is not None

    async def test_duplicate_phone(self, sql_store):
        await sql_store.create_account(Account(phone_number=RIDER_PHONE))
        with pytest.raises(ValidationError):
            await sql_store.create_account(Account(phone_number=RIDER_PHONE))

    async def test_missing(self, sql_store):
        assert await sql_store.get_account("ACC-MISSING") is None
        assert await sql_store.find_account_by_phone(BROTHER) is None

    async def test_save_keeps_presence(self, sql_store):
        account = await sql_store.create_account(Account(phone_number=RIDER_PHONE))
        assert await sql_store.update_presence(
            account.account_id, "h1", True, datetime.now(timezone.utc),
        )
        account.name = "Asha"
        account.settings.share_location = False
        saved = await sql_store.save_account(account)
        assert saved.name == "Asha"
        assert saved.presence_handle == "h1"
        assert saved.is_online is True

        stored = await sql_store.get_account(account.account_id)
        assert stored.settings.share_location is False

    async def test_update_presence_unknown_account(self, sql_store):
        assert not await sql_store.update_presence(
            "ACC-MISSING", None, False, datetime.now(timezone.utc),
        )

    async def test_touch_last_seen_leaves_presence(self, sql_store):
        account = await sql_store.create_account(Account(phone_number=RIDER_PHONE))
        earlier = datetime(2020, 1, 1, tzinfo=timezone.utc)
        await sql_store.update_presence(account.account_id, "h1", True, earlier)

        assert await sql_store.touch_last_seen(account.account_id, datetime.now(timezone.utc))
        stored = await sql_store.get_account(account.account_id)
        assert stored.last_seen > earlier
        assert stored.presence_handle == "h1"
        assert stored.is_online is True
        assert not await sql_store.touch_last_seen("ACC-MISSING", earlier)


class TestAlerts:

    async def test_create_and_get(self, sql_store):
        alert = _make_alert(metadata={"device_info": {"model": "Pixel 8"}})
        await sql_store.create_alert(alert)
        stored = await sql_store.get_alert(alert.alert_id)
        assert stored.status == AlertStatus.PENDING
        assert stored.severity == Severity.SEVERE
        assert stored.metadata == {"device_info": {"model": "Pixel 8"}}
        assert stored.notifications_sent == []

    async def test_transition_is_conditional(self, sql_store):
        alert = await sql_store.create_alert(_make_alert())
        sent_at = datetime.now(timezone.utc)

        assert await sql_store.transition_status(
            alert.alert_id, {AlertStatus.PENDING}, AlertStatus.SENT, sent_at=sent_at,
        )
        assert not await sql_store.transition_status(
            alert.alert_id, {AlertStatus.PENDING}, AlertStatus.CANCELLED,
            cancelled_at=sent_at,
        )
        stored = await sql_store.get_alert(alert.alert_id)
        assert stored.status == AlertStatus.SENT
        assert stored.sent_at is not None
        assert stored.cancelled_at is None

    async def test_transition_rejects_unknown_fields(self, sql_store):
        alert = await sql_store.create_alert(_make_alert())
        with pytest.raises(ValueError):
            await sql_store.transition_status(
                alert.alert_id, {AlertStatus.PENDING}, AlertStatus.SENT, magnitude=1.0,
            )

    async def test_record_notifications_preserves_order(self, sql_store):
        alert = await sql_store.create_alert(_make_alert())
        records = [
            DeliveryRecord("+913333333333", DeliveryMethod.SMS, DeliveryOutcome.SENT),
            DeliveryRecord(BROTHER, DeliveryMethod.PUSH_AND_SMS, DeliveryOutcome.FAILED,
                           error="push: x; sms: y"),
        ]
        assert await sql_store.record_notifications(alert.alert_id, records)
        stored = await sql_store.get_alert(alert.alert_id)
        assert [r.contact_phone_number for r in stored.notifications_sent] == [
            "+913333333333", BROTHER,
        ]
        assert stored.notifications_sent[1].error == "push: x; sms: y"

    async def test_record_notifications_unknown_alert(self, sql_store):
        assert not await sql_store.record_notifications("ALR-MISSING", [])

    async def test_location_ignored_when_closed(self, sql_store):
        alert = await sql_store.create_alert(_make_alert())
        now = datetime.now(timezone.utc)
        assert await sql_store.update_location(alert.alert_id, 1.0, 2.0, now)
        await sql_store.transition_status(
            alert.alert_id, {AlertStatus.PENDING}, AlertStatus.CANCELLED, cancelled_at=now,
        )
        assert not await sql_store.update_location(alert.alert_id, 5.0, 6.0, now)
        stored = await sql_store.get_alert(alert.alert_id)
        assert (stored.location.latitude, stored.location.longitude) == (1.0, 2.0)

    async def test_list_and_count_filters(self, sql_store):
        mine = [await sql_store.create_alert(_make_alert("ACC-1")) for _ in range(3)]
        theirs = await sql_store.create_alert(_make_alert("ACC-2"))
        await sql_store.record_notifications(theirs.alert_id, [
            DeliveryRecord(BROTHER, DeliveryMethod.SMS, DeliveryOutcome.SENT),
        ])

        newest_first = await sql_store.list_alerts(owner_id="ACC-1", limit=2)
        assert [a.alert_id for a in newest_first] == [mine[2].alert_id, mine[1].alert_id]
        assert await sql_store.count_alerts(owner_id="ACC-1") == 3

        received = await sql_store.list_alerts(
            notified_phone=BROTHER, exclude_owner_id="ACC-3",
        )
        assert [a.alert_id for a in received] == [theirs.alert_id]
        assert await sql_store.count_alerts(
            notified_phone=BROTHER, exclude_owner_id="ACC-2",
        ) == 0
        assert await sql_store.count_alerts(status=AlertStatus.PENDING) == 4


class TestLifecycleOnSql:

    async def test_send_path_end_to_end(self, sql_store, settings, push, sms, hub):
        services = build_services(settings, store=sql_store, push=push, sms=sms, hub=hub)
        try:
            rider = await make_account(services, RIDER_PHONE, "Asha", contacts=(BROTHER,))
            alert = await services.alerts.create_alert(
                rider.account_id, 88, {"latitude": 12.97, "longitude": 77.59},
            )
            sent = await services.alerts.expire_countdown(alert.alert_id)
            assert sent.status == AlertStatus.SENT
            assert [r.contact_phone_number for r in sent.notifications_sent] == [BROTHER]

            acked = await services.alerts.acknowledge_alert(alert.alert_id, BROTHER)
            assert acked.acknowledged_by == BROTHER
        finally:
            await services.alerts.shutdown()
