"""Client-side conversation collection with a derived unread snapshot."""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, Iterable

from marketplace_chat.application.dto.principal import Principal
from marketplace_chat.domain.entities.conversation import Conversation
from marketplace_chat.domain.entities.message import Message
from marketplace_chat.domain.value_objects.enums import ConversationStatus, UserRole
from marketplace_chat.services.unread import UnreadSnapshot, compute_unread

logger = logging.getLogger(__name__)

OnUnreadChange = Callable[[UnreadSnapshot], None]


class ConversationStore:
    """Ordered conversations, most recently added first.

    Conversations are never removed; closing one is a status change.
    The unread snapshot is recomputed after every mutation.
    """

    def __init__(
        self,
        principal: Principal | None = None,
        *,
        on_change: OnUnreadChange | None = None,
    ) -> None:
        self.principal = principal
        self._on_change = on_change
        self._conversations: dict[int, Conversation] = {}
        self._unread = UnreadSnapshot()

    @property
    def conversations(self) -> list[Conversation]:
        return list(self._conversations.values())

    @property
    def unread(self) -> UnreadSnapshot:
        return self._unread

    def get(self, conversation_id: int) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def replace_all(self, conversations: Iterable[Conversation]) -> None:
        self._conversations = {c.id: c for c in conversations}
        self._commit()

    def add(self, conversation: Conversation) -> None:
        rest = {k: v for k, v in self._conversations.items() if k != conversation.id}
        self._conversations = {conversation.id: conversation, **rest}
        self._commit()

    def upsert(self, conversation: Conversation) -> None:
        if conversation.id in self._conversations:
            self._conversations[conversation.id] = conversation
            self._commit()
        else:
            self.add(conversation)

    def update(self, conversation_id: int, **changes: Any) -> Conversation | None:
        current = self._conversations.get(conversation_id)
        if current is None:
            return None
        updated = replace(current, **changes)
        self._conversations[conversation_id] = updated
        self._commit()
        return updated

    def close(self, conversation_id: int) -> Conversation | None:
        return self.update(conversation_id, status=ConversationStatus.CLOSED)

    def record_message(self, message: Message, *, viewing: bool = False) -> None:
        """Bump activity for a confirmed message; count it unread unless it is ours or on screen."""
        current = self._conversations.get(message.conversation_id)
        if current is None:
            logger.debug("Message %d for unknown conversation %d", message.id, message.conversation_id)
            return
        updated = replace(
            current,
            last_activity_at=message.created_at,
            last_message=message.content,
        )
        if not viewing:
            updated = self._incremented(updated, message.sender_id)
        self._conversations[current.id] = updated
        self._commit()

    def increment_unread(self, conversation_id: int, sender_id: int) -> None:
        current = self._conversations.get(conversation_id)
        if current is None:
            return
        updated = self._incremented(current, sender_id)
        if updated is not current:
            self._conversations[conversation_id] = updated
            self._commit()

    def mark_read(self, conversation_id: int) -> None:
        current = self._conversations.get(conversation_id)
        if current is None or self.principal is None:
            return
        if self.principal.role == UserRole.BUYER:
            updated = replace(current, unread_buyer=0)
        else:
            updated = replace(current, unread_supplier=0)
        self._conversations[conversation_id] = updated
        self._commit()

    def _incremented(self, conversation: Conversation, sender_id: int) -> Conversation:
        principal = self.principal
        if principal is None or sender_id == principal.user_id:
            return conversation
        if sender_id == conversation.participant_for(principal.role):
            return conversation
        if principal.role == UserRole.BUYER:
            return replace(conversation, unread_buyer=(conversation.unread_buyer or 0) + 1)
        return replace(conversation, unread_supplier=(conversation.unread_supplier or 0) + 1)

    def _commit(self) -> None:
        self._unread = compute_unread(self._conversations.values())
        if self._on_change is None:
            return
        try:
            self._on_change(self._unread)
        except Exception:
            logger.exception("Unread listener failed")
