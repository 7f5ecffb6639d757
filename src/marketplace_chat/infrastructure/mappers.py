from __future__ import annotations

from marketplace_chat.domain.entities.conversation import Conversation
from marketplace_chat.domain.entities.message import Message
from marketplace_chat.domain.value_objects.enums import (
    ConversationPriority,
    ConversationStatus,
    MessageStatus,
)
from marketplace_chat.infrastructure.realtime.protocol import (
    ConversationPayload,
    MessagePayload,
)


def message_to_entity(payload: MessagePayload) -> Message:
    return Message(
        id=payload.id,
        conversation_id=payload.conversation_id,
        sender_id=payload.sender_id,
        content=payload.content,
        created_at=payload.created_at,
        read=payload.read,
        status=MessageStatus.READ if payload.read else MessageStatus.SENT,
        metadata=payload.metadata,
    )


def conversation_to_entity(payload: ConversationPayload) -> Conversation:
    try:
        status = ConversationStatus(payload.status)
    except ValueError:
        status = ConversationStatus.OPEN
    priority: ConversationPriority | None
    try:
        priority = ConversationPriority(payload.priority) if payload.priority else None
    except ValueError:
        priority = None
    return Conversation(
        id=payload.id,
        buyer_id=payload.buyer_id,
        supplier_id=payload.supplier_id,
        status=status,
        subject=payload.subject,
        unread_buyer=payload.unread_buyer,
        unread_supplier=payload.unread_supplier,
        priority=priority,
        last_activity_at=payload.last_activity_at,
        counterpart_name=payload.counterpart_name,
        last_message=payload.last_message,
    )


def parse_message_status(raw: str) -> MessageStatus | None:
    try:
        return MessageStatus(raw)
    except ValueError:
        return None
