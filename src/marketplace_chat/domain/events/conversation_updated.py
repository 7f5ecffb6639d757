from __future__ import annotations

from dataclasses import dataclass

from marketplace_chat.domain.entities.conversation import Conversation


@dataclass(frozen=True, slots=True)
class ConversationUpdated:
    conversation: Conversation
