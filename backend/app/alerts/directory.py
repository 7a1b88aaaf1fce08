"""
directory.py — Contact Directory.

Resolves a phone number to a registered Account (and therefore to its
reachable channels: push token, live presence handle) and owns the
read-modify-write operations on an account's profile, emergency contact
list and settings.

Phone numbers
    Stored in E.164 form (`^\\+?[1-9]\\d{1,14}$`) after stripping common
    formatting (spaces, dashes, dots, parentheses). Two numbers are the
    "same number" when their digits match, so "+91 98765-43210" and
    "919876543210" compare equal. This is what self-exclusion uses.

Concurrency
    Reads are lock-free. Writes to one account are serialised by a
    per-account asyncio.Lock so two concurrent contact edits cannot lose
    each other's changes. There is no lock across accounts.
"""

from __future__ import annotations

import asyncio
import logging
import re
import weakref
from dataclasses import fields as dataclass_fields
from datetime import datetime, timezone
from typing import Any, List, Optional

from backend.app.alerts.models import Account, AccountSettings, EmergencyContact
from backend.app.alerts.store import AlertStore
from backend.app.core.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

E164_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
_FORMATTING = re.compile(r"[\s\-().]")

MAX_COUNTDOWN_SECONDS = 300

_SETTINGS_FIELDS = frozenset(f.name for f in dataclass_fields(AccountSettings))


def normalize_phone(raw: str) -> str:
    """Strip formatting and validate E.164. Raises ValidationError."""
    candidate = _FORMATTING.sub("", raw or "")
    if not E164_PATTERN.match(candidate):
        raise ValidationError(
            f"Invalid phone number: {raw!r}", field="phone_number",
        )
    return candidate


def _digits(phone: str) -> str:
    return "".join(ch for ch in phone or "" if ch.isdigit())


def same_number(a: Optional[str], b: Optional[str]) -> bool:
    """True when both numbers carry the same digits."""
    da, db = _digits(a or ""), _digits(b or "")
    return bool(da) and da == db


class ContactDirectory:
    """
    Account lookups and owner-driven account edits.

    Parameters
    ----------
    store : AlertStore
        Persistence collaborator.
    max_contacts : int
        Cap on emergency contacts per account.
    """

    def __init__(self, store: AlertStore, *, max_contacts: int = 5) -> None:
        self._store = store
        self._max_contacts = max_contacts
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        # entries vanish once no task holds or awaits the lock
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    # ── Lookups ──

    async def resolve(self, phone_number: str) -> Optional[Account]:
        """Registered account for a number, or None."""
        try:
            normalized = normalize_phone(phone_number)
        except ValidationError:
            return None
        account = await self._store.find_account_by_phone(normalized)
        if account is None and normalized != phone_number:
            account = await self._store.find_account_by_phone(phone_number)
        return account

    async def get_account(self, account_id: str) -> Account:
        account = await self._store.get_account(account_id)
        if account is None:
            raise NotFoundError("Account", account_id=account_id)
        return account

    @staticmethod
    def contacts_of(owner: Account) -> List[EmergencyContact]:
        """Owner's emergency contacts, minus any entry carrying the owner's own number."""
        return [
            c for c in owner.emergency_contacts
            if not same_number(c.phone_number, owner.phone_number)
        ]

    # ── Writes ──

    async def register(
        self,
        phone_number: str,
        name: str = "",
        push_token: Optional[str] = None,
    ) -> Account:
        """Get-or-create on first authentication; refreshes name/token if given."""
        normalized = normalize_phone(phone_number)
        existing = await self._store.find_account_by_phone(normalized)
        if existing is None:
            try:
                account = await self._store.create_account(Account(
                    phone_number=normalized,
                    name=(name or "").strip(),
                    push_token=push_token or None,
                ))
            except ValidationError:
                # another request registered the same number first
                existing = await self._store.find_account_by_phone(normalized)
                if existing is None:
                    raise
            else:
                logger.info(
                    "Registered account %s", account.account_id,
                    extra={"account_id": account.account_id},
                )
                return account

        if not (name or push_token):
            return existing
        async with self._lock_for(existing.account_id):
            account = await self.get_account(existing.account_id)
            if name:
                account.name = name.strip()
            if push_token:
                account.push_token = push_token
            return await self._store.save_account(account)

    async def add_contact(
        self,
        account_id: str,
        phone_number: str,
        *,
        name: str = "",
        relationship: str = "",
        is_primary: bool = False,
    ) -> Account:
        normalized = normalize_phone(phone_number)
        async with self._lock_for(account_id):
            account = await self.get_account(account_id)
            if same_number(normalized, account.phone_number):
                raise ValidationError(
                    "An account cannot be its own emergency contact",
                    field="phone_number",
                )

            contact = EmergencyContact(
                phone_number=normalized,
                name=(name or "").strip(),
                relationship=(relationship or "").strip(),
                is_primary=is_primary,
            )
            index = next(
                (i for i, c in enumerate(account.emergency_contacts)
                 if same_number(c.phone_number, normalized)),
                None,
            )
            if index is None:
                if len(account.emergency_contacts) >= self._max_contacts:
                    raise ValidationError(
                        f"At most {self._max_contacts} emergency contacts allowed",
                        field="emergency_contacts",
                        limit=self._max_contacts,
                    )
                account.emergency_contacts.append(contact)
            else:
                account.emergency_contacts[index] = contact

            if is_primary:
                for other in account.emergency_contacts:
                    if other is not contact:
                        other.is_primary = False

            saved = await self._store.save_account(account)
        logger.info(
            "Contact %s saved for %s", normalized, account_id,
            extra={"account_id": account_id, "contact": normalized},
        )
        return saved

    async def remove_contact(self, account_id: str, phone_number: str) -> Account:
        async with self._lock_for(account_id):
            account = await self.get_account(account_id)
            remaining = [
                c for c in account.emergency_contacts
                if not same_number(c.phone_number, phone_number)
            ]
            if len(remaining) == len(account.emergency_contacts):
                raise NotFoundError(
                    "EmergencyContact", account_id=account_id, phone_number=phone_number,
                )
            account.emergency_contacts = remaining
            return await self._store.save_account(account)

    async def update_push_token(self, account_id: str, token: Optional[str]) -> Account:
        """Set or clear (None / empty) the push registration token."""
        async with self._lock_for(account_id):
            account = await self.get_account(account_id)
            account.push_token = token or None
            return await self._store.save_account(account)

    async def update_profile(
        self,
        account_id: str,
        *,
        name: Optional[str] = None,
        push_token: Optional[str] = None,
    ) -> Account:
        """Change display name and/or push token; empty values leave a field as is."""
        async with self._lock_for(account_id):
            account = await self.get_account(account_id)
            if name and name.strip():
                account.name = name.strip()
            if push_token:
                account.push_token = push_token
            return await self._store.save_account(account)

    async def update_settings(self, account_id: str, **changes: Any) -> Account:
        unknown = set(changes) - _SETTINGS_FIELDS
        if unknown:
            raise ValidationError(
                f"Unknown settings: {', '.join(sorted(unknown))}", field="settings",
            )
        countdown = changes.get("countdown_seconds")
        if countdown is not None and not 0 < int(countdown) <= MAX_COUNTDOWN_SECONDS:
            raise ValidationError(
                f"countdown_seconds must be between 1 and {MAX_COUNTDOWN_SECONDS}",
                field="countdown_seconds",
            )

        async with self._lock_for(account_id):
            account = await self.get_account(account_id)
            for key, value in changes.items():
                if value is not None:
                    setattr(account.settings, key, value)
            return await self._store.save_account(account)

    async def touch(self, account_id: str) -> None:
        """Refresh last_seen. Handle and online flag belong to the presence registry."""
        if not await self._store.touch_last_seen(account_id, datetime.now(timezone.utc)):
            raise NotFoundError("Account", account_id=account_id)
