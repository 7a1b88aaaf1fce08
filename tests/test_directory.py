"""
test_directory.py — Contact Directory: phone handling, registration,
contact list edits and settings.

Run with:
    pytest tests/test_directory.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from backend.app.alerts.directory import (
    ContactDirectory,
    normalize_phone,
    same_number,
)
from backend.app.alerts.models import EmergencyContact
from backend.app.core.errors import NotFoundError, ValidationError

from tests.conftest import RIDER_PHONE

LONG_AGO = datetime(2020, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def directory(store):
    return ContactDirectory(store, max_contacts=3)


class TestPhoneNumbers:

    def test_normalize_strips_formatting(self):
        assert normalize_phone("+91 98765-43210") == "+919876543210"
        assert normalize_phone("(987) 654.3210") == "9876543210"

    @pytest.mark.parametrize("raw", ["", "abc", "+0123456", "12345678901234567", None])
    def test_normalize_rejects_invalid(self, raw):
        with pytest.raises(ValidationError):
            normalize_phone(raw)

    def test_same_number_ignores_plus_and_spacing(self):
        assert same_number("+919876543210", "91 98765 43210")
        assert not same_number("+919876543210", "+919876543211")

    def test_same_number_empty_never_matches(self):
        assert not same_number("", "")
        assert not same_number(None, "+919876543210")


class TestRegister:

    async def test_creates_on_first_call(self, directory):
        account = await directory.register(RIDER_PHONE, "Asha")
        assert account.account_id.startswith("ACC-")
        assert account.name == "Asha"
        assert account.push_token is None

    async def test_returns_existing_and_refreshes_token(self, directory):
        first = await directory.register(RIDER_PHONE, "Asha")
        second = await directory.register("+91 98765 43210", push_token="fcm-1")
        assert second.account_id == first.account_id
        assert second.push_token == "fcm-1"
        assert second.name == "Asha"

    async def test_concurrent_first_registration_yields_one_account(self, directory, store):
        a, b = await asyncio.gather(
            directory.register(RIDER_PHONE, "Asha"),
            directory.register(RIDER_PHONE, "Asha"),
        )
        assert a.account_id == b.account_id

    async def test_invalid_phone(self, directory):
        with pytest.raises(ValidationError):
            await directory.register("not-a-phone")


class TestLookups:

    async def test_resolve_unknown_is_none(self, directory):
        assert await directory.resolve("+911234567890") is None

    async def test_resolve_invalid_is_none(self, directory):
        assert await directory.resolve("garbage") is None

    async def test_resolve_formatted_number(self, directory):
        account = await directory.register(RIDER_PHONE)
        resolved = await directory.resolve("+91 98765-43210")
        assert resolved.account_id == account.account_id

    async def test_get_account_missing(self, directory):
        with pytest.raises(NotFoundError):
            await directory.get_account("ACC-MISSING")

    async def test_contacts_of_excludes_own_number(self, directory, store):
        account = await directory.register(RIDER_PHONE)
        account.emergency_contacts = [
            EmergencyContact(phone_number="+911111111111"),
            EmergencyContact(phone_number="919876543210"),
        ]
        saved = await store.save_account(account)
        contacts = ContactDirectory.contacts_of(saved)
        assert [c.phone_number for c in contacts] == ["+911111111111"]


class TestContactEdits:

    async def test_add_contact(self, directory):
        account = await directory.register(RIDER_PHONE)
        updated = await directory.add_contact(
            account.account_id, "+911111111111", name="Ravi", relationship="brother",
        )
        assert len(updated.emergency_contacts) == 1
        assert updated.emergency_contacts[0].name == "Ravi"

    async def test_readding_replaces_entry(self, directory):
        account = await directory.register(RIDER_PHONE)
        await directory.add_contact(account.account_id, "+911111111111", name="Ravi")
        await directory.add_contact(account.account_id, "+912222222222")
        updated = await directory.add_contact(account.account_id, "+91 11111 11111", name="Ravi K")
        assert [c.name for c in updated.emergency_contacts] == ["Ravi K", ""]

    async def test_new_primary_clears_others(self, directory):
        account = await directory.register(RIDER_PHONE)
        await directory.add_contact(account.account_id, "+911111111111", is_primary=True)
        updated = await directory.add_contact(account.account_id, "+912222222222", is_primary=True)
        primaries = [c.phone_number for c in updated.emergency_contacts if c.is_primary]
        assert primaries == ["+912222222222"]

    async def test_contact_cap(self, directory):
        account = await directory.register(RIDER_PHONE)
        for n in ("+911111111111", "+912222222222", "+913333333333"):
            await directory.add_contact(account.account_id, n)
        with pytest.raises(ValidationError):
            await directory.add_contact(account.account_id, "+914444444444")

    async def test_cannot_add_self(self, directory):
        account = await directory.register(RIDER_PHONE)
        with pytest.raises(ValidationError):
            await directory.add_contact(account.account_id, "919876543210")

    async def test_concurrent_adds_are_not_lost(self, directory):
        account = await directory.register(RIDER_PHONE)
        await asyncio.gather(
            directory.add_contact(account.account_id, "+911111111111"),
            directory.add_contact(account.account_id, "+912222222222"),
            directory.add_contact(account.account_id, "+913333333333"),
        )
        stored = await directory.get_account(account.account_id)
        assert len(stored.emergency_contacts) == 3

    async def test_remove_contact(self, directory):
        account = await directory.register(RIDER_PHONE)
        await directory.add_contact(account.account_id, "+911111111111")
        updated = await directory.remove_contact(account.account_id, "+911111111111")
        assert updated.emergency_contacts == []

    async def test_remove_unknown_contact(self, directory):
        account = await directory.register(RIDER_PHONE)
        with pytest.raises(NotFoundError):
            await directory.remove_contact(account.account_id, "+911111111111")


class TestSettingsAndToken:

    async def test_update_push_token_and_clear(self, directory):
        account = await directory.register(RIDER_PHONE)
        updated = await directory.update_push_token(account.account_id, "fcm-9")
        assert updated.push_token == "fcm-9"
        cleared = await directory.update_push_token(account.account_id, "")
        assert cleared.push_token is None

    async def test_partial_settings_update(self, directory):
        account = await directory.register(RIDER_PHONE)
        updated = await directory.update_settings(
            account.account_id, countdown_seconds=30, share_location=False,
        )
        assert updated.settings.countdown_seconds == 30
        assert updated.settings.share_location is False
        assert updated.settings.sms_fallback is True

    async def test_unknown_setting(self, directory):
        account = await directory.register(RIDER_PHONE)
        with pytest.raises(ValidationError):
            await directory.update_settings(account.account_id, volume=11)

    @pytest.mark.parametrize("seconds", [0, -1, 301])
    async def test_countdown_bounds(self, directory, seconds):
        account = await directory.register(RIDER_PHONE)
        with pytest.raises(ValidationError):
            await directory.update_settings(account.account_id, countdown_seconds=seconds)

    async def test_edits_leave_presence_alone(self, directory, store):
        account = await directory.register(RIDER_PHONE)
        await store.update_presence(account.account_id, "h1", True, account.last_seen)
        updated = await directory.update_push_token(account.account_id, "fcm-1")
        assert updated.is_online is True
        assert updated.presence_handle == "h1"

    async def test_update_profile(self, directory):
        account = await directory.register(RIDER_PHONE, "Asha")
        updated = await directory.update_profile(
            account.account_id, name="  Asha R ", push_token="fcm-3",
        )
        assert updated.name == "Asha R"
        assert updated.push_token == "fcm-3"

        kept = await directory.update_profile(account.account_id, name="", push_token=None)
        assert kept.name == "Asha R"
        assert kept.push_token == "fcm-3"

    async def test_update_profile_unknown_account(self, directory):
        with pytest.raises(NotFoundError):
            await directory.update_profile("ACC-MISSING", name="X")


class TestTouch:

    async def test_touch_refreshes_last_seen_only(self, directory, store):
        account = await directory.register(RIDER_PHONE)
        await store.update_presence(account.account_id, "h1", True, LONG_AGO)

        await directory.touch(account.account_id)
        stored = await store.get_account(account.account_id)
        assert stored.last_seen > LONG_AGO
        assert stored.presence_handle == "h1"
        assert stored.is_online is True

    async def test_touch_unknown_account(self, directory):
        with pytest.raises(NotFoundError):
            await directory.touch("ACC-MISSING")


class TestAccountLocks:

    async def test_locks_released_after_edits(self, directory):
        account = await directory.register(RIDER_PHONE)
        await asyncio.gather(
            directory.add_contact(account.account_id, "+911111111111"),
            directory.add_contact(account.account_id, "+912222222222"),
            directory.update_settings(account.account_id, share_location=False),
        )
        assert len(directory._locks) == 0
