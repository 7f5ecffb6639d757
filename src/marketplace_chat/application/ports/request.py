from __future__ import annotations

from typing import Any, Protocol


class RequestLayer(Protocol):
    async def request(self, method: str, path: str, body: dict[str, Any] | None = None) -> Any: ...
