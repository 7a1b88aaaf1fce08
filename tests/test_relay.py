"""
test_relay.py — Location Relay fan-out to connected contacts.

Run with:
    pytest tests/test_relay.py -v
"""

from __future__ import annotations

from backend.app.alerts.directory import ContactDirectory

from tests.conftest import (
    BANGALORE_LAT,
    BANGALORE_LON,
    RIDER_PHONE,
    force_contacts,
    make_account,
)

BROTHER = "+911111111111"
FRIEND = "+912222222222"


async def _rider_with_online_contacts(services):
    rider = await make_account(services, RIDER_PHONE, "Asha", contacts=(BROTHER, FRIEND))
    brother = await make_account(services, BROTHER)
    friend = await make_account(services, FRIEND)
    await services.presence.attach(brother.account_id, "h-brother")
    await services.presence.attach(friend.account_id, "h-friend")
    return rider


class TestBroadcastLocation:

    async def test_plain_sharing_reaches_present_contacts(self, services, hub):
        rider = await _rider_with_online_contacts(services)
        delivered = await services.relay.broadcast_location(
            rider, BANGALORE_LAT, BANGALORE_LON,
        )
        assert delivered == 2
        [(event, payload)] = hub.events_for("h-brother")
        assert event == "contact:location_update"
        assert payload["userId"] == rider.account_id
        assert payload["phoneNumber"] == RIDER_PHONE
        assert payload["name"] == "Asha"
        assert payload["latitude"] == BANGALORE_LAT
        assert "alertId" not in payload

    async def test_alert_location_carries_alert_id(self, services, hub):
        rider = await _rider_with_online_contacts(services)
        await services.relay.broadcast_location(
            rider, BANGALORE_LAT, BANGALORE_LON, alert_id="ALR-1",
        )
        [(event, payload)] = hub.events_for("h-friend")
        assert event == "emergency:location_update"
        assert payload["alertId"] == "ALR-1"

    async def test_sharing_disabled_blocks_plain_updates(self, services, hub):
        rider = await _rider_with_online_contacts(services)
        rider = await services.directory.update_settings(rider.account_id, share_location=False)
        assert await services.relay.broadcast_location(rider, 1.0, 2.0) == 0
        assert hub.emitted == []

    async def test_sharing_disabled_still_relays_alert_location(self, services):
        rider = await _rider_with_online_contacts(services)
        rider = await services.directory.update_settings(rider.account_id, share_location=False)
        assert await services.relay.broadcast_location(rider, 1.0, 2.0, alert_id="ALR-1") == 2

    async def test_offline_and_unregistered_contacts_miss_sample(self, services, hub):
        rider = await make_account(
            services, RIDER_PHONE, "Asha", contacts=(BROTHER, FRIEND, "+913333333333"),
        )
        brother = await make_account(services, BROTHER)
        await make_account(services, FRIEND)
        await services.presence.attach(brother.account_id, "h-brother")
        assert await services.relay.broadcast_location(rider, 1.0, 2.0) == 1

    async def test_dead_handle_counts_as_missed(self, services, hub):
        rider = await _rider_with_online_contacts(services)
        hub.dead.add("h-friend")
        assert await services.relay.broadcast_location(rider, 1.0, 2.0) == 1

    async def test_never_relays_to_self(self, services, hub):
        rider = await make_account(services, RIDER_PHONE, "Asha")
        await services.presence.attach(rider.account_id, "h-rider")
        rider = await force_contacts(services, rider.account_id, [RIDER_PHONE])
        assert await services.relay.broadcast_location(rider, 1.0, 2.0) == 0
        assert hub.emitted == []

    async def test_lookup_failure_for_one_contact(self, services, hub, monkeypatch):
        rider = await _rider_with_online_contacts(services)
        real_resolve = ContactDirectory.resolve

        async def flaky(self, phone):
            if phone == FRIEND:
                raise ConnectionError("directory unavailable")
            return await real_resolve(self, phone)

        monkeypatch.setattr(ContactDirectory, "resolve", flaky)
        assert await services.relay.broadcast_location(rider, 1.0, 2.0) == 1
        assert hub.event_names("h-brother") == ["contact:location_update"]
