"""Shared test fixtures."""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import jwt
import pytest

from marketplace_chat.application.exceptions import TransportError
from marketplace_chat.application.ports.transport import OnDisconnectCallback, OnEventCallback
from marketplace_chat.domain.entities.conversation import Conversation
from marketplace_chat.domain.entities.message import Message
from marketplace_chat.domain.value_objects.enums import (
    ConversationPriority,
    ConversationStatus,
)
from marketplace_chat.infrastructure.auth.token_store import MemoryTokenStore
from marketplace_chat.infrastructure.realtime.session import TransportSession

TEST_SECRET = "test-secret-with-at-least-32-bytes!!"
BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_token(sub: int = 42, role: str | int = "buyer", expires_in: float | None = 3600) -> str:
    claims: dict[str, Any] = {"sub": str(sub), "role": role}
    if expires_in is not None:
        claims["exp"] = int(time.time() + expires_in)
    return jwt.encode(claims, TEST_SECRET, algorithm="HS256")


def make_conversation(
    *,
    conversation_id: int = 7,
    buyer_id: int = 42,
    supplier_id: int = 99,
    status: ConversationStatus = ConversationStatus.OPEN,
    unread_buyer: int | None = 0,
    unread_supplier: int | None = 0,
    priority: ConversationPriority | None = None,
) -> Conversation:
    return Conversation(
        id=conversation_id,
        buyer_id=buyer_id,
        supplier_id=supplier_id,
        status=status,
        subject="Bulk order",
        unread_buyer=unread_buyer,
        unread_supplier=unread_supplier,
        priority=priority,
        last_activity_at=BASE_TIME,
    )


def make_message(
    *,
    id: int = 1001,
    conversation_id: int = 7,
    sender_id: int = 42,
    content: str = "hello",
    minutes: int = 0,
    read: bool = False,
) -> Message:
    return Message(
        id=id,
        conversation_id=conversation_id,
        sender_id=sender_id,
        content=content,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        read=read,
    )


def message_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": 1001,
        "conversation_id": 7,
        "sender_id": 99,
        "content": "hello",
        "created_at": "2026-01-01T12:00:00Z",
    }
    payload.update(overrides)
    return payload


def conversation_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": 7,
        "acheteur_id": 42,
        "fournisseur_id": 99,
        "sujet": "Bulk order",
        "statut": "ouverte",
        "messages_non_lus_acheteur": 0,
        "messages_non_lus_fournisseur": 0,
    }
    payload.update(overrides)
    return payload


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@dataclass
class FakeTransport:
    """Scripted realtime socket.

    ``failures`` holds one outcome per connect call (an exception to raise
    or ``None`` for success); once it is empty every call succeeds.
    """

    failures: list[BaseException | None] = field(default_factory=list)
    hang: bool = False
    connected: bool = False
    connect_calls: int = 0
    disconnect_calls: int = 0
    last_auth: dict[str, str] | None = None
    emitted: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    _on_event: OnEventCallback | None = field(default=None, repr=False)
    _on_disconnect: OnDisconnectCallback | None = field(default=None, repr=False)

    def bind(self, on_event: OnEventCallback, on_disconnect: OnDisconnectCallback) -> None:
        self._on_event = on_event
        self._on_disconnect = on_disconnect

    async def connect(self, url: str, auth: dict[str, str]) -> None:
        self.connect_calls += 1
        self.last_auth = auth
        await asyncio.sleep(0)
        if self.hang:
            await asyncio.Event().wait()
        if self.failures:
            outcome = self.failures.pop(0)
            if outcome is not None:
                raise outcome
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    async def emit(self, event: str, data: dict[str, Any]) -> None:
        if not self.connected:
            raise TransportError(f"{event}: not connected")
        self.emitted.append((event, data))

    def push(self, event: str, data: dict[str, Any]) -> None:
        assert self._on_event is not None
        self._on_event(event, data)

    def drop(self, reason: str = "transport close") -> None:
        assert self._on_disconnect is not None
        self.connected = False
        self._on_disconnect(reason)

    def emitted_named(self, event: str) -> list[dict[str, Any]]:
        return [data for name, data in self.emitted if name == event]


@dataclass
class FakeMessageSender:
    """Request layer stand-in for message sends.

    ``outcomes`` is consumed one per call: a ``Message`` is returned, an
    exception is raised. When empty, a message with the next id is
    returned. ``gate`` holds every call until it is set.
    """

    outcomes: list[Message | BaseException] = field(default_factory=list)
    calls: list[tuple[int, str]] = field(default_factory=list)
    gate: asyncio.Event | None = None
    next_id: int = 1000

    async def send_message(
        self,
        conversation_id: int,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        self.calls.append((conversation_id, content))
        if self.gate is not None:
            await self.gate.wait()
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        self.next_id += 1
        return make_message(id=self.next_id, conversation_id=conversation_id, content=content)


@dataclass
class FakeRequestLayer:
    """Returns canned JSON per (method, path) and records every call."""

    responses: dict[tuple[str, str], Any] = field(default_factory=dict)
    calls: list[tuple[str, str, dict[str, Any] | None]] = field(default_factory=list)

    async def request(self, method: str, path: str, body: dict[str, Any] | None = None) -> Any:
        self.calls.append((method, path, body))
        response = self.responses.get((method, path))
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(body)
        return response


def make_session(
    transport: FakeTransport,
    token: str | None = None,
    **overrides: Any,
) -> TransportSession:
    options: dict[str, Any] = {
        "url": "http://chat.test",
        "connect_timeout": 0.05,
        "max_attempts": 5,
        "reconnect_delay": 0.01,
        "growth_factor": 1.5,
        "max_delay": 0.05,
        "heartbeat_interval": 0,
    }
    options.update(overrides)
    credentials = MemoryTokenStore(make_token() if token is None else token)
    return TransportSession(transport, credentials, **options)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def sender() -> FakeMessageSender:
    return FakeMessageSender()
