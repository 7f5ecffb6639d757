from __future__ import annotations

from typing import Any, Protocol

from marketplace_chat.domain.entities.message import Message


class MessageSender(Protocol):
    async def send_message(
        self,
        conversation_id: int,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> Message: ...
