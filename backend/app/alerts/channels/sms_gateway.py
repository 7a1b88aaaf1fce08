"""
sms_gateway.py — SMS delivery channel via gateway integration.

Delivery mechanism:
    • Primary: Twilio Programmable Messaging REST API over httpx
    • Payload: plain text; long bodies are split into segments by the carrier

═══════════════════════════════════════════════════════════════════════════
SMS GATEWAY ARCHITECTURE
═══════════════════════════════════════════════════════════════════════════

    App  →  HTTP POST  →  Twilio API  →  Carrier  →  Handset

        POST {TWILIO_API_BASE}/Accounts/{SID}/Messages.json
             To=+91…  From=+1…  Body=…      (HTTP basic auth SID:TOKEN)

    Default provider is "simulation", which logs instead of sending.

The phone number is always known for an emergency contact, so SMS is the
one channel that can be attempted for every contact.
"""

from __future__ import annotations

import abc
import logging
import uuid
from typing import Any, Dict, List, Optional

import httpx

from backend.app.core.errors import DeliveryError

logger = logging.getLogger(__name__)

SMS_MAX_GSM7 = 160      # characters per GSM 7-bit segment


def segment_count(text: str) -> int:
    return 1 + (len(text) - 1) // SMS_MAX_GSM7 if text else 0


class SmsTransport(abc.ABC):
    """send(phone_number, text) → provider message id, or DeliveryError."""

    channel = "sms"

    @abc.abstractmethod
    async def send(self, phone_number: str, text: str) -> str:
        ...

    async def close(self) -> None:
        pass


class SimulatedSmsTransport(SmsTransport):
    """Logs messages instead of sending them (development default)."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def send(self, phone_number: str, text: str) -> str:
        message_id = f"SMsim{uuid.uuid4().hex[:16]}"
        logger.info(
            "[SMS] → %s: %d chars, %d segment(s) → '%s'",
            phone_number, len(text), segment_count(text),
            text[:60].replace("\n", " ") + ("..." if len(text) > 60 else ""),
        )
        self.sent.append({"to": phone_number, "body": text, "sid": message_id})
        return message_id


class TwilioSmsTransport(SmsTransport):
    """
    Twilio REST transport.

    Parameters
    ----------
    account_sid, auth_token : str | None
        Twilio credentials (basic auth).
    from_number : str | None
        Sender number in E.164.
    api_base : str
        API root, overridable for tests or regional endpoints.
    timeout_seconds : float
        HTTP timeout per message.
    client : httpx.AsyncClient | None
        Shared client; one is created lazily if omitted.
    """

    def __init__(
        self,
        account_sid: Optional[str],
        auth_token: Optional[str],
        from_number: Optional[str],
        *,
        api_base: str = "https://api.twilio.com/2010-04-01",
        timeout_seconds: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout_seconds
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def send(self, phone_number: str, text: str) -> str:
        if not (self._account_sid and self._auth_token and self._from_number):
            raise DeliveryError("sms", "Twilio credentials not configured")

        url = f"{self._api_base}/Accounts/{self._account_sid}/Messages.json"
        try:
            response = await self._get_client().post(
                url,
                data={"To": phone_number, "From": self._from_number, "Body": text},
                auth=(self._account_sid, self._auth_token),
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise DeliveryError("sms", str(exc) or type(exc).__name__, phone=phone_number) from exc

        if response.status_code >= 400:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            raise DeliveryError(
                "sms", f"HTTP {response.status_code}: {detail}", phone=phone_number,
            )

        sid = response.json().get("sid", "")
        logger.info("[SMS/Twilio] %s → %s (%d segment(s))", sid, phone_number, segment_count(text))
        return sid

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
