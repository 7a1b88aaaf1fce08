"""
presence.py — Presence Registry.

Maps account identity → live connection handle, online flag, last seen.

    attach(identity, handle)          on authenticated connect
    detach(identity, handle=None)     on disconnect

Both are serialised per identity with a dedicated asyncio.Lock; the last
write wins. A detach that names a handle which has since been replaced by
a newer attach is ignored, so a reconnect racing the old socket's
disconnect never leaves the account marked offline (or the stale handle
registered):

    t0  attach(A, h1)
    t1  attach(A, h2)        ← client reconnected
    t2  detach(A, h1)        ← old socket finally closed → ignored
        handle_for(A) == h2

Every transition is written through to the store so the account document
reflects presence, but lookups are served from memory.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from backend.app.alerts.store import AlertStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PresenceEntry:
    handle: Optional[str]
    is_online: bool
    last_seen: datetime


class PresenceRegistry:
    """Task-safe identity → live handle map."""

    def __init__(self, store: Optional[AlertStore] = None) -> None:
        self._store = store
        self._entries: Dict[str, PresenceEntry] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, identity: str) -> asyncio.Lock:
        lock = self._locks.get(identity)
        if lock is None:
            lock = self._locks[identity] = asyncio.Lock()
        return lock

    async def attach(self, identity: str, handle: str) -> PresenceEntry:
        async with self._lock_for(identity):
            entry = PresenceEntry(handle, True, datetime.now(timezone.utc))
            self._entries[identity] = entry
            if self._store is not None:
                await self._store.update_presence(
                    identity, handle, True, entry.last_seen,
                )
        logger.info(
            "Account %s online (handle %s)", identity, handle[:8],
            extra={"account_id": identity},
        )
        return entry

    async def detach(self, identity: str, handle: Optional[str] = None) -> bool:
        """Mark offline. False when `handle` is no longer the registered one."""
        async with self._lock_for(identity):
            current = self._entries.get(identity)
            if handle is not None and current is not None and current.handle != handle:
                logger.debug(
                    "Ignoring stale detach for %s (handle %s)", identity, handle[:8],
                )
                return False
            entry = PresenceEntry(None, False, datetime.now(timezone.utc))
            self._entries[identity] = entry
            if self._store is not None:
                await self._store.update_presence(
                    identity, None, False, entry.last_seen,
                )
        logger.info("Account %s offline", identity, extra={"account_id": identity})
        return True

    def get(self, identity: str) -> Optional[PresenceEntry]:
        return self._entries.get(identity)

    def handle_for(self, identity: str) -> Optional[str]:
        entry = self._entries.get(identity)
        if entry is None or not entry.is_online:
            return None
        return entry.handle

    def is_online(self, identity: str) -> bool:
        return self.handle_for(identity) is not None

    def online_count(self) -> int:
        return sum(1 for e in self._entries.values() if e.is_online)
