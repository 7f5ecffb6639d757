from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from marketplace_chat.domain.value_objects.enums import MessageStatus


@dataclass(frozen=True, slots=True)
class Message:
    """Server-confirmed message. Only ``read`` and ``status`` ever change."""

    id: int
    conversation_id: int
    sender_id: int
    content: str
    created_at: datetime
    read: bool = False
    status: MessageStatus = MessageStatus.SENT
    metadata: dict[str, Any] | None = None


@dataclass(slots=True)
class OptimisticMessage:
    """Client-local entry for a send the server has not confirmed yet."""

    id: str
    conversation_id: int
    sender_id: int
    content: str
    created_at: datetime
    status: MessageStatus = MessageStatus.SENDING
    retry_count: int = 0
    error: str | None = None
    metadata: dict[str, Any] | None = None


ChatEntry = Message | OptimisticMessage
