from __future__ import annotations

from dataclasses import dataclass

from marketplace_chat.domain.value_objects.enums import MessageStatus


@dataclass(frozen=True, slots=True)
class MessageStatusChanged:
    message_id: int
    status: MessageStatus
    conversation_id: int | None = None
