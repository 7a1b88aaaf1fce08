"""
Shared fixtures for the alert engine tests.

Transports are replaced by recording fakes so no test touches the network:
    FakePush  — records sends, fails for configured tokens
    FakeSms   — records sends, fails for configured numbers
    FakeHub   — WebSocketHub whose emit records events instead of writing
                to sockets; handles listed in `dead` behave as gone
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytest

from backend.app.alerts.channels.live import WebSocketHub
from backend.app.alerts.channels.push import PushTransport
from backend.app.alerts.channels.sms_gateway import SmsTransport
from backend.app.alerts.container import AlertServices, build_services
from backend.app.alerts.models import Account, EmergencyContact
from backend.app.alerts.store import InMemoryStore
from backend.app.core.config import Settings
from backend.app.core.errors import DeliveryError


RIDER_PHONE = "+919876543210"
BANGALORE_LAT = 12.9716
BANGALORE_LON = 77.5946


class FakePush(PushTransport):

    def __init__(self, fail_tokens: Iterable[str] = (), fail_all: bool = False) -> None:
        self.fail_tokens = set(fail_tokens)
        self.fail_all = fail_all
        self.sent: List[Dict[str, Any]] = []

    async def send(self, token: str, title: str, body: str, data: Dict[str, str]) -> str:
        if self.fail_all or token in self.fail_tokens:
            raise DeliveryError("push", "Requested entity was not found")
        self.sent.append({"token": token, "title": title, "body": body, "data": data})
        return f"push-{len(self.sent)}"


class FakeSms(SmsTransport):

    def __init__(self, fail_numbers: Iterable[str] = (), fail_all: bool = False) -> None:
        self.fail_numbers = set(fail_numbers)
        self.fail_all = fail_all
        self.sent: List[Dict[str, str]] = []

    async def send(self, phone_number: str, text: str) -> str:
        if self.fail_all or phone_number in self.fail_numbers:
            raise DeliveryError("sms", "HTTP 400: invalid 'To' number")
        self.sent.append({"to": phone_number, "body": text})
        return f"SM{len(self.sent)}"


class FakeHub(WebSocketHub):

    def __init__(self) -> None:
        super().__init__()
        self.emitted: List[Tuple[str, str, Dict[str, Any]]] = []
        self.dead: set = set()

    async def emit(self, handle: str, event: str, payload: Dict[str, Any]) -> bool:
        if handle in self.dead:
            return False
        self.emitted.append((handle, getattr(event, "value", event), payload))
        return True

    def events_for(self, handle: str) -> List[Tuple[str, Dict[str, Any]]]:
        return [(e, p) for h, e, p in self.emitted if h == handle]

    def event_names(self, handle: str) -> List[str]:
        return [e for e, _ in self.events_for(handle)]


def make_settings(**overrides: Any) -> Settings:
    values = dict(
        ENVIRONMENT="test",
        STORE_BACKEND="memory",
        PUSH_PROVIDER="simulation",
        SMS_PROVIDER="simulation",
        ACK_REQUIRE_EMERGENCY_CONTACT=True,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


async def make_account(
    services: AlertServices,
    phone: str,
    name: str = "",
    *,
    push_token: Optional[str] = None,
    contacts: Iterable[str] = (),
) -> Account:
    """Register an account and add emergency contacts by number."""
    account = await services.directory.register(phone, name, push_token)
    for number in contacts:
        account = await services.directory.add_contact(account.account_id, number)
    return account


async def set_countdown(services: AlertServices, account_id: str, seconds: float) -> Account:
    """Short countdowns for timing tests (bypasses the 1 s minimum)."""
    account = await services.store.get_account(account_id)
    account.settings.countdown_seconds = seconds
    return await services.store.save_account(account)


async def force_contacts(
    services: AlertServices, account_id: str, numbers: Iterable[str],
) -> Account:
    """Write a raw contact list, including entries the directory would reject."""
    account = await services.store.get_account(account_id)
    account.emergency_contacts = [EmergencyContact(phone_number=n) for n in numbers]
    return await services.store.save_account(account)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def push() -> FakePush:
    return FakePush()


@pytest.fixture
def sms() -> FakeSms:
    return FakeSms()


@pytest.fixture
def hub() -> FakeHub:
    return FakeHub()


@pytest.fixture
async def services(settings, store, push, sms, hub):
    services = build_services(settings, store=store, push=push, sms=sms, hub=hub)
    yield services
    await services.alerts.shutdown()
