from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from marketplace_chat.domain.value_objects.enums import (
    ConversationPriority,
    ConversationStatus,
    UserRole,
)


@dataclass(frozen=True, slots=True)
class Conversation:
    id: int
    buyer_id: int
    supplier_id: int
    status: ConversationStatus = ConversationStatus.OPEN
    subject: str = ""
    unread_buyer: int | None = 0
    unread_supplier: int | None = 0
    priority: ConversationPriority | None = None
    last_activity_at: datetime | None = None
    counterpart_name: str | None = None
    last_message: str | None = None

    @property
    def is_closed(self) -> bool:
        return self.status == ConversationStatus.CLOSED

    @property
    def unread_total(self) -> int:
        return (self.unread_buyer or 0) + (self.unread_supplier or 0)

    def participant_for(self, role: UserRole) -> int:
        return self.buyer_id if role == UserRole.BUYER else self.supplier_id
