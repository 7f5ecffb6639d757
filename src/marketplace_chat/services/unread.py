"""Unread badge derivation. Pure functions over a conversation collection."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from marketplace_chat.domain.entities.conversation import Conversation
from marketplace_chat.domain.value_objects.enums import ConversationPriority

PRIORITY_LEVELS = frozenset({ConversationPriority.HIGH, ConversationPriority.URGENT})


@dataclass(frozen=True, slots=True)
class UnreadSnapshot:
    total: int = 0
    per_conversation: dict[int, int] = field(default_factory=dict)
    priority_total: int = 0

    @property
    def has_unread(self) -> bool:
        return self.total > 0

    @property
    def has_priority_unread(self) -> bool:
        return self.priority_total > 0


def compute_unread(conversations: Iterable[Conversation] | None) -> UnreadSnapshot:
    """Sum both role counters of every conversation; missing counters count as 0."""
    if not conversations:
        return UnreadSnapshot()
    total = 0
    priority_total = 0
    per_conversation: dict[int, int] = {}
    for conversation in conversations:
        count = conversation.unread_total
        if count <= 0:
            continue
        total += count
        per_conversation[conversation.id] = count
        if conversation.priority in PRIORITY_LEVELS:
            priority_total += count
    return UnreadSnapshot(total=total, per_conversation=per_conversation, priority_total=priority_total)


def format_badge(count: int, max_count: int = 99, *, show_zero: bool = False) -> str | None:
    if count <= 0 and not show_zero:
        return None
    return f"{max_count}+" if count > max_count else str(max(count, 0))
