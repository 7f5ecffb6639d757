from __future__ import annotations

from marketplace_chat.application.exceptions import ConversationClosedError
from marketplace_chat.domain.entities.conversation import Conversation


def assert_can_send(conversation: Conversation | None, closed_flag: bool = False) -> None:
    """Raise if the conversation no longer accepts new messages."""
    if closed_flag or (conversation is not None and conversation.is_closed):
        raise ConversationClosedError("Conversation is closed")
