"""
test_presence.py — Presence Registry attach / detach semantics.

Run with:
    pytest tests/test_presence.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from backend.app.alerts.directory import ContactDirectory
from backend.app.alerts.presence import PresenceRegistry
from backend.app.alerts.store import InMemoryStore

from tests.conftest import RIDER_PHONE, make_account


class _YieldingStore(InMemoryStore):
    """Gives other tasks a turn before every read and last-seen write."""

    async def get_account(self, account_id):
        await asyncio.sleep(0)
        return await super().get_account(account_id)

    async def touch_last_seen(self, account_id, last_seen):
        await asyncio.sleep(0)
        return await super().touch_last_seen(account_id, last_seen)


class TestAttachDetach:

    async def test_attach_marks_online(self):
        registry = PresenceRegistry()
        entry = await registry.attach("ACC-1", "h1")
        assert entry.is_online
        assert registry.handle_for("ACC-1") == "h1"
        assert registry.is_online("ACC-1")

    async def test_unknown_identity(self):
        registry = PresenceRegistry()
        assert registry.get("ACC-X") is None
        assert registry.handle_for("ACC-X") is None
        assert not registry.is_online("ACC-X")

    async def test_detach_marks_offline(self):
        registry = PresenceRegistry()
        await registry.attach("ACC-1", "h1")
        assert await registry.detach("ACC-1", "h1") is True
        assert registry.handle_for("ACC-1") is None
        entry = registry.get("ACC-1")
        assert entry.is_online is False
        assert entry.handle is None

    async def test_reattach_replaces_handle(self):
        registry = PresenceRegistry()
        await registry.attach("ACC-1", "h1")
        await registry.attach("ACC-1", "h2")
        assert registry.handle_for("ACC-1") == "h2"

    async def test_stale_detach_ignored(self):
        """Old socket closing after a reconnect must not take the account offline."""
        registry = PresenceRegistry()
        await registry.attach("ACC-1", "h1")
        await registry.attach("ACC-1", "h2")
        assert await registry.detach("ACC-1", "h1") is False
        assert registry.handle_for("ACC-1") == "h2"

    async def test_detach_without_handle_always_applies(self):
        registry = PresenceRegistry()
        await registry.attach("ACC-1", "h2")
        assert await registry.detach("ACC-1") is True
        assert not registry.is_online("ACC-1")

    async def test_online_count(self):
        registry = PresenceRegistry()
        await registry.attach("ACC-1", "h1")
        await registry.attach("ACC-2", "h2")
        await registry.detach("ACC-2", "h2")
        assert registry.online_count() == 1

    async def test_concurrent_attach_leaves_one_handle(self):
        registry = PresenceRegistry()
        await asyncio.gather(*(registry.attach("ACC-1", f"h{i}") for i in range(10)))
        assert registry.handle_for("ACC-1") in {f"h{i}" for i in range(10)}
        assert registry.online_count() == 1

    async def test_locks_released_after_use(self):
        registry = PresenceRegistry()
        await asyncio.gather(*(registry.attach(f"ACC-{i}", "h") for i in range(5)))
        await registry.detach("ACC-0", "h")
        assert len(registry._locks) == 0


class TestWriteThrough:

    async def test_account_document_reflects_presence(self, services):
        account = await make_account(services, RIDER_PHONE)
        await services.presence.attach(account.account_id, "h1")

        stored = await services.store.get_account(account.account_id)
        assert stored.is_online is True
        assert stored.presence_handle == "h1"

        await services.presence.detach(account.account_id, "h1")
        stored = await services.store.get_account(account.account_id)
        assert stored.is_online is False
        assert stored.presence_handle is None

    async def test_stale_detach_not_written(self, services):
        account = await make_account(services, RIDER_PHONE)
        await services.presence.attach(account.account_id, "h1")
        await services.presence.attach(account.account_id, "h2")
        await services.presence.detach(account.account_id, "h1")
        stored = await services.store.get_account(account.account_id)
        assert stored.presence_handle == "h2"
        assert stored.is_online is True

    @pytest.mark.parametrize("touch_first", [True, False])
    async def test_touch_racing_detach_keeps_account_offline(self, touch_first):
        store = _YieldingStore()
        directory = ContactDirectory(store)
        registry = PresenceRegistry(store)
        account = await directory.register(RIDER_PHONE)
        await registry.attach(account.account_id, "h1")

        touch = directory.touch(account.account_id)
        detach = registry.detach(account.account_id, "h1")
        await asyncio.gather(*((touch, detach) if touch_first else (detach, touch)))

        assert registry.handle_for(account.account_id) is None
        stored = await store.get_account(account.account_id)
        assert stored.is_online is False
        assert stored.presence_handle is None
