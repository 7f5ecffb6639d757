from __future__ import annotations

from dataclasses import dataclass

from marketplace_chat.domain.entities.message import Message


@dataclass(frozen=True, slots=True)
class MessageReceived:
    message: Message
