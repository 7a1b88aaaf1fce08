"""
live.py — Real-time channel over WebSocket connections.

Each accepted connection gets an opaque handle. The Presence Registry maps
account → handle; this hub maps handle → socket. Emitting to a handle that
has gone away (client dropped, server restarted, registry stale) is a soft
failure: `emit` returns False and logs, it never raises.

Wire format (server → client):

    {"event": "alert:sent", "data": {"alertId": "ALR-…", "notificationsSent": 3}}
"""

from __future__ import annotations

import abc
import logging
import uuid
from typing import Any, Dict, Optional

from starlette.websockets import WebSocket

logger = logging.getLogger(__name__)


def _event_name(event: Any) -> str:
    return getattr(event, "value", event)


class LiveTransport(abc.ABC):

    @abc.abstractmethod
    async def emit(self, handle: str, event: str, payload: Dict[str, Any]) -> bool:
        """Deliver one event; False when the handle is unknown or the send failed."""


class WebSocketHub(LiveTransport):
    """In-process registry of open WebSocket connections."""

    def __init__(self) -> None:
        self._sockets: Dict[str, WebSocket] = {}

    def register(self, websocket: WebSocket) -> str:
        handle = uuid.uuid4().hex
        self._sockets[handle] = websocket
        return handle

    def unregister(self, handle: str) -> None:
        self._sockets.pop(handle, None)

    def get(self, handle: str) -> Optional[WebSocket]:
        return self._sockets.get(handle)

    @property
    def connection_count(self) -> int:
        return len(self._sockets)

    async def emit(self, handle: str, event: str, payload: Dict[str, Any]) -> bool:
        websocket = self._sockets.get(handle)
        if websocket is None:
            logger.debug("Live handle %s gone — dropping %s", handle[:8], _event_name(event))
            return False
        try:
            await websocket.send_json({"event": _event_name(event), "data": payload})
        except Exception as exc:
            # closed sockets raise a mix of RuntimeError / WebSocketDisconnect
            logger.warning(
                "Live emit %s to %s failed: %s", _event_name(event), handle[:8], exc,
            )
            self._sockets.pop(handle, None)
            return False
        return True
