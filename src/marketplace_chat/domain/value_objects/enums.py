from __future__ import annotations

from enum import StrEnum


class ConversationStatus(StrEnum):
    OPEN = "open"
    CLOSED = "closed"


class ConversationPriority(StrEnum):
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class UserRole(StrEnum):
    BUYER = "buyer"
    SUPPLIER = "supplier"


class MessageStatus(StrEnum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    ERROR = "error"


class SessionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class EventKind(StrEnum):
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    RECONNECT = "reconnect"
    ERROR = "error"
    MESSAGE = "message"
    TYPING = "typing"
    MESSAGE_STATUS = "message_status"
    CONVERSATION_UPDATED = "conversation_updated"
    STATE_CHANGED = "state_changed"
