"""Realtime and REST payload models.

The server speaks either English field names or the legacy French ones;
both are accepted.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# server → client
EVENT_DISCONNECT = "disconnect"
EVENT_CONNECT_ERROR = "connect_error"
EVENT_NEW_MESSAGE = "new_message"
EVENT_USER_TYPING = "user_typing"
EVENT_MESSAGE_STATUS = "message_status_update"
EVENT_CONVERSATION_UPDATED = "conversation_updated"

# client → server
EMIT_JOIN = "join_conversation"
EMIT_LEAVE = "leave_conversation"
EMIT_TYPING_START = "typing_start"
EMIT_TYPING_STOP = "typing_stop"
EMIT_MARK_READ = "mark_as_read"
EMIT_PING = "ping"

# legacy name -> (canonical name, implied payload fields)
EVENT_ALIASES: dict[str, tuple[str, dict[str, Any]]] = {
    "message:new": (EVENT_NEW_MESSAGE, {}),
    "typing:start": (EVENT_USER_TYPING, {"is_typing": True}),
    "typing:stop": (EVENT_USER_TYPING, {"is_typing": False}),
    "user_stopped_typing": (EVENT_USER_TYPING, {"is_typing": False}),
}

_STATUS_ALIASES = {"ouverte": "open", "fermee": "closed", "fermée": "closed"}
_PRIORITY_ALIASES = {"normale": "normal", "haute": "high", "urgente": "urgent"}


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class MessagePayload(_Payload):
    id: int
    conversation_id: int
    sender_id: int = Field(validation_alias=AliasChoices("sender_id", "expediteur_id"))
    content: str = Field(validation_alias=AliasChoices("content", "contenu"))
    created_at: datetime
    read: bool = Field(default=False, validation_alias=AliasChoices("read", "lu"))
    metadata: dict[str, Any] | None = None

    @field_validator("created_at")
    @classmethod
    def created_at_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class TypingPayload(_Payload):
    conversation_id: int
    user_id: int
    is_typing: bool = True
    user_name: str | None = None


class MessageStatusPayload(_Payload):
    message_id: int
    status: str
    conversation_id: int | None = None


class ConversationPayload(_Payload):
    id: int
    buyer_id: int = Field(validation_alias=AliasChoices("buyer_id", "acheteur_id"))
    supplier_id: int = Field(validation_alias=AliasChoices("supplier_id", "fournisseur_id"))
    status: str = Field(default="open", validation_alias=AliasChoices("status", "statut"))
    subject: str = Field(default="", validation_alias=AliasChoices("subject", "sujet"))
    unread_buyer: int | None = Field(
        default=None,
        validation_alias=AliasChoices("unread_buyer", "messages_non_lus_acheteur"),
    )
    unread_supplier: int | None = Field(
        default=None,
        validation_alias=AliasChoices("unread_supplier", "messages_non_lus_fournisseur"),
    )
    priority: str | None = Field(default=None, validation_alias=AliasChoices("priority", "priorite"))
    last_activity_at: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("last_activity_at", "derniere_activite", "updated_at"),
    )
    counterpart_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("counterpart_name", "nom_entreprise"),
    )
    last_message: str | None = Field(
        default=None,
        validation_alias=AliasChoices("last_message", "dernier_message"),
    )

    @field_validator("last_activity_at")
    @classmethod
    def last_activity_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @field_validator("status")
    @classmethod
    def normalize_status(cls, value: str) -> str:
        return _STATUS_ALIASES.get(value, value)

    @field_validator("priority")
    @classmethod
    def normalize_priority(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _PRIORITY_ALIASES.get(value, value)

    @field_validator("unread_buyer", "unread_supplier")
    @classmethod
    def clamp_unread(cls, value: int | None) -> int | None:
        if value is not None and value < 0:
            return 0
        return value


class ApiEnvelope(_Payload):
    """REST response envelope ``{success, data, error, message}``."""

    success: bool = True
    data: Any = None
    error: str | None = None
    message: str | None = None


def canonical_event(event: str, data: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    """Fold legacy event names into the canonical vocabulary."""
    alias = EVENT_ALIASES.get(event)
    if alias is None:
        return event, data
    name, implied = alias
    return name, {**data, **implied}
