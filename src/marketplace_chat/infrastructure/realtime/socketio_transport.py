"""python-socketio implementation of the realtime transport port."""
from __future__ import annotations

import logging
from typing import Any, Sequence

import socketio
from socketio import exceptions as sio_exceptions

from marketplace_chat.application.exceptions import TransportError
from marketplace_chat.application.ports.transport import (
    OnDisconnectCallback,
    OnEventCallback,
)
from marketplace_chat.infrastructure.realtime import protocol

logger = logging.getLogger(__name__)


class SocketIOTransport:
    """Socket.IO client with its own reconnection switched off.

    Reconnection and room replay belong to ``TransportSession``; this
    adapter only opens one socket, forwards every server event and
    reports drops.
    """

    def __init__(
        self,
        *,
        path: str = "socket.io",
        transports: Sequence[str] = ("websocket",),
        wait_timeout: float = 10.0,
        client: socketio.AsyncClient | None = None,
    ) -> None:
        self._client = client or socketio.AsyncClient(reconnection=False)
        self._path = path
        self._transports = list(transports)
        self._wait_timeout = wait_timeout
        self._on_event: OnEventCallback | None = None
        self._on_disconnect: OnDisconnectCallback | None = None

        self._client.on("*", self._forward)
        self._client.on(protocol.EVENT_DISCONNECT, self._handle_disconnect)
        self._client.on(protocol.EVENT_CONNECT_ERROR, self._handle_connect_error)

    def bind(self, on_event: OnEventCallback, on_disconnect: OnDisconnectCallback) -> None:
        self._on_event = on_event
        self._on_disconnect = on_disconnect

    async def connect(self, url: str, auth: dict[str, str]) -> None:
        if self._client.connected:
            return
        try:
            await self._client.connect(
                url,
                auth=auth,
                transports=self._transports,
                socketio_path=self._path,
                wait_timeout=self._wait_timeout,
            )
        except sio_exceptions.ConnectionError as exc:
            raise TransportError(str(exc) or "Socket.IO connection refused") from exc
        logger.debug("Socket.IO connected: sid=%s", self._client.sid)

    async def disconnect(self) -> None:
        await self._client.disconnect()

    async def emit(self, event: str, data: dict[str, Any]) -> None:
        if not self._client.connected:
            raise TransportError(f"Cannot emit {event}: socket not connected")
        try:
            await self._client.emit(event, data)
        except sio_exceptions.SocketIOError as exc:
            raise TransportError(str(exc)) from exc

    async def _forward(self, event: str, *args: Any) -> None:
        if self._on_event is None:
            return
        data = args[0] if args else {}
        if not isinstance(data, dict):
            data = {"value": data}
        self._on_event(event, data)

    async def _handle_disconnect(self, *args: Any) -> None:
        reason = str(args[0]) if args else "transport closed"
        if self._on_disconnect is not None:
            self._on_disconnect(reason)

    async def _handle_connect_error(self, data: Any = None) -> None:
        logger.debug("Socket.IO connect_error: %s", data)
