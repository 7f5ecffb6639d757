from __future__ import annotations

from typing import Any

from marketplace_chat.application.exceptions import ApiError
from marketplace_chat.application.ports.request import RequestLayer
from marketplace_chat.domain.entities.conversation import Conversation
from marketplace_chat.domain.entities.message import Message
from marketplace_chat.infrastructure.mappers import conversation_to_entity, message_to_entity
from marketplace_chat.infrastructure.realtime.protocol import (
    ApiEnvelope,
    ConversationPayload,
    MessagePayload,
)


def _unwrap(raw: Any) -> Any:
    """Return the ``data`` of a ``{success, data, error}`` envelope."""
    if isinstance(raw, dict) and ("data" in raw or "success" in raw):
        envelope = ApiEnvelope.model_validate(raw)
        if not envelope.success:
            raise ApiError(envelope.error or envelope.message or "Request failed")
        return envelope.data
    return raw


def _require(data: Any, what: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ApiError(f"Server returned no {what}")
    return data


class MessagingApi:
    """Conversation and message endpoints over the request layer."""

    def __init__(self, requests: RequestLayer) -> None:
        self._requests = requests

    async def list_conversations(self) -> list[Conversation]:
        data = _unwrap(await self._requests.request("GET", "/conversations"))
        return [conversation_to_entity(ConversationPayload.model_validate(c)) for c in data or []]

    async def create_conversation(self, supplier_id: int, subject: str) -> Conversation:
        data = _unwrap(
            await self._requests.request(
                "POST", "/conversations", {"supplier_id": supplier_id, "subject": subject},
            )
        )
        return conversation_to_entity(
            ConversationPayload.model_validate(_require(data, "conversation"))
        )

    async def list_messages(self, conversation_id: int) -> list[Message]:
        data = _unwrap(
            await self._requests.request("GET", f"/conversations/{conversation_id}/messages")
        )
        return [message_to_entity(MessagePayload.model_validate(m)) for m in data or []]

    async def send_message(
        self,
        conversation_id: int,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        body: dict[str, Any] = {"content": content}
        if metadata is not None:
            body["metadata"] = metadata
        data = _unwrap(
            await self._requests.request(
                "POST", f"/conversations/{conversation_id}/messages", body,
            )
        )
        return message_to_entity(MessagePayload.model_validate(_require(data, "message")))

    async def mark_as_read(self, conversation_id: int, message_ids: list[int]) -> None:
        await self._requests.request(
            "POST",
            f"/conversations/{conversation_id}/messages/read",
            {"message_ids": message_ids},
        )
