from __future__ import annotations

from typing import Any, Callable, Protocol

OnEventCallback = Callable[[str, dict[str, Any]], None]
OnDisconnectCallback = Callable[[str], None]


class RealtimeTransport(Protocol):
    """One physical realtime socket.

    ``connect`` returns once the server acknowledged the connection and
    raises ``TransportError`` when it refused. The transport never
    reconnects on its own; it reports drops through the disconnect
    callback.
    """

    def bind(self, on_event: OnEventCallback, on_disconnect: OnDisconnectCallback) -> None: ...

    async def connect(self, url: str, auth: dict[str, str]) -> None: ...

    async def disconnect(self) -> None: ...

    async def emit(self, event: str, data: dict[str, Any]) -> None: ...
