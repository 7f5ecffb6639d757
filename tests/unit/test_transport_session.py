from __future__ import annotations

import asyncio
from dataclasses import dataclass

import pytest

from marketplace_chat.application.exceptions import (
    AuthError,
    ConnectionExhaustedError,
    ConnectTimeoutError,
    TransportError,
)
from marketplace_chat.domain.events.conversation_updated import ConversationUpdated
from marketplace_chat.domain.events.message_received import MessageReceived
from marketplace_chat.domain.events.typing_changed import TypingChanged
from marketplace_chat.domain.value_objects.enums import (
    ConversationStatus,
    EventKind,
    SessionState,
)
from tests.conftest import (
    FakeTransport,
    conversation_payload,
    make_session,
    make_token,
    message_payload,
    wait_until,
)


@pytest.mark.asyncio
async def test_connect_passes_token_and_notifies(transport):
    token = make_token()
    session = make_session(transport, token)
    connected = []
    session.on(EventKind.CONNECT, lambda: connected.append(True))

    await session.connect()

    assert session.state == SessionState.CONNECTED
    assert transport.last_auth == {"token": token}
    assert connected == [True]


@pytest.mark.asyncio
async def test_connect_is_idempotent(transport):
    session = make_session(transport)

    await session.connect()
    await session.connect()

    assert transport.connect_calls == 1


@pytest.mark.asyncio
async def test_concurrent_connects_share_one_attempt(transport):
    session = make_session(transport)

    await asyncio.gather(session.connect(), session.connect(), session.connect())

    assert transport.connect_calls == 1
    assert session.is_connected


@pytest.mark.asyncio
async def test_connect_without_token_raises_auth_error(transport):
    session = make_session(transport, token="")
    errors = []
    session.on(EventKind.ERROR, errors.append)

    with pytest.raises(AuthError):
        await session.connect()

    assert transport.connect_calls == 0
    assert session.state == SessionState.ERROR
    assert isinstance(errors[0], AuthError)


@pytest.mark.asyncio
async def test_connect_with_expired_token_raises_auth_error(transport):
    session = make_session(transport, token=make_token(expires_in=-60))

    with pytest.raises(AuthError):
        await session.connect()

    assert transport.connect_calls == 0


@pytest.mark.asyncio
async def test_connect_times_out_without_acknowledgment():
    transport = FakeTransport(hang=True)
    session = make_session(transport, max_attempts=1, connect_timeout=0.02)

    with pytest.raises(ConnectTimeoutError):
        await session.connect()

    assert transport.connect_calls == 2
    assert session.state == SessionState.ERROR


@pytest.mark.asyncio
async def test_transient_failures_are_retried_then_counter_resets():
    transport = FakeTransport(failures=[TransportError("refused"), TransportError("refused")])
    session = make_session(transport)
    errors = []
    session.on(EventKind.ERROR, errors.append)

    await session.connect()

    assert session.is_connected
    assert transport.connect_calls == 3
    assert session.reconnect_attempt == 0
    assert len(errors) == 2


@pytest.mark.asyncio
async def test_exhausted_budget_is_terminal():
    transport = FakeTransport(failures=[TransportError("refused")] * 10)
    session = make_session(transport, max_attempts=2)
    errors = []
    session.on(EventKind.ERROR, errors.append)

    with pytest.raises(ConnectionExhaustedError):
        await session.connect()

    assert transport.connect_calls == 3
    assert session.state == SessionState.ERROR
    assert isinstance(errors[-1], ConnectionExhaustedError)


@pytest.mark.asyncio
async def test_room_joined_while_disconnected_is_emitted_once_on_connect(transport):
    session = make_session(transport)

    await session.join_room(5)
    assert transport.emitted == []

    await session.connect()
    await session.join_room(5)

    assert transport.emitted_named("join_conversation") == [{"conversation_id": 5}]


@pytest.mark.asyncio
async def test_reconnect_replays_exactly_the_joined_rooms(transport):
    session = make_session(transport)
    reconnected = []
    session.on(EventKind.RECONNECT, lambda: reconnected.append(True))
    await session.connect()
    await session.join_room(1)
    await session.join_room(2)
    transport.emitted.clear()
    transport.failures = [TransportError("refused"), TransportError("refused")]

    transport.drop()
    await wait_until(lambda: session.is_connected and reconnected)

    joins = transport.emitted_named("join_conversation")
    assert sorted(j["conversation_id"] for j in joins) == [1, 2]
    assert transport.connect_calls == 4
    assert session.reconnect_attempt == 0


@pytest.mark.asyncio
async def test_leave_during_disconnect_window_is_not_lost(transport):
    session = make_session(transport, reconnect_delay=0.05)
    await session.connect()
    await session.join_room(1)
    await session.join_room(2)
    transport.emitted.clear()

    transport.drop()
    await session.leave_room(2)
    await wait_until(lambda: session.is_connected)

    assert transport.emitted_named("join_conversation") == [{"conversation_id": 1}]
    assert transport.emitted_named("leave_conversation") == []
    assert session.rooms == frozenset({1})


@pytest.mark.asyncio
async def test_manual_disconnect_cancels_pending_reconnect(transport):
    session = make_session(transport, reconnect_delay=0.1)
    await session.connect()
    transport.drop()
    assert session.state == SessionState.DISCONNECTED

    states = []
    session.on(EventKind.STATE_CHANGED, states.append)
    await session.disconnect()
    await asyncio.sleep(0.2)

    assert transport.connect_calls == 1
    assert SessionState.CONNECTING not in states
    assert session.state == SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_disconnect_clears_rooms_and_ignores_late_drop(transport):
    session = make_session(transport)
    await session.connect()
    await session.join_room(3)

    await session.disconnect()
    transport.drop("late close")
    await asyncio.sleep(0.05)

    assert session.rooms == frozenset()
    assert transport.connect_calls == 1
    assert transport.disconnect_calls == 1


@pytest.mark.asyncio
async def test_leave_and_join_while_connected(transport):
    session = make_session(transport)
    await session.connect()

    await session.join_room(4)
    await session.join_room(4)
    await session.leave_room(4)

    assert transport.emitted == [
        ("join_conversation", {"conversation_id": 4}),
        ("leave_conversation", {"conversation_id": 4}),
    ]


@pytest.mark.asyncio
async def test_typing_and_read_emissions(transport):
    session = make_session(transport)

    await session.send_typing(7, True)
    assert transport.emitted == []

    await session.connect()
    await session.send_typing(7, True)
    await session.send_typing(7, False)
    await session.mark_read(7, 1001)

    assert transport.emitted == [
        ("typing_start", {"conversation_id": 7}),
        ("typing_stop", {"conversation_id": 7}),
        ("mark_as_read", {"conversation_id": 7, "message_id": 1001}),
    ]


@pytest.mark.asyncio
async def test_heartbeat_pings_only_while_connected(transport):
    session = make_session(transport, heartbeat_interval=0.01)
    await session.connect()
    await wait_until(lambda: transport.emitted_named("ping"))

    await session.disconnect()
    pings = len(transport.emitted_named("ping"))
    await asyncio.sleep(0.05)

    assert len(transport.emitted_named("ping")) == pings


@pytest.mark.asyncio
async def test_last_registration_wins_per_owner(transport):
    session = make_session(transport)
    first, second, other = [], [], []
    session.on(EventKind.CONNECT, lambda: first.append(1), owner="chat")
    session.on(EventKind.CONNECT, lambda: second.append(1), owner="chat")
    session.on(EventKind.CONNECT, lambda: other.append(1), owner="badge")

    await session.connect()

    assert first == []
    assert second == [1]
    assert other == [1]


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others(transport):
    session = make_session(transport)
    received = []

    def boom(_event):
        raise RuntimeError("consumer bug")

    session.on(EventKind.MESSAGE, boom, owner="broken")
    session.on(EventKind.MESSAGE, received.append, owner="ok")
    await session.connect()

    transport.push("new_message", message_payload())

    assert len(received) == 1


@pytest.mark.asyncio
async def test_off_removes_owner_handlers(transport):
    session = make_session(transport)
    received = []
    session.on(EventKind.MESSAGE, received.append, owner="view")
    session.off("view")
    await session.connect()

    transport.push("new_message", message_payload())

    assert received == []


@pytest.mark.asyncio
async def test_inbound_events_are_typed(transport):
    session = make_session(transport)
    messages, typing, updates = [], [], []
    session.on(EventKind.MESSAGE, messages.append)
    session.on(EventKind.TYPING, typing.append)
    session.on(EventKind.CONVERSATION_UPDATED, updates.append)
    await session.connect()

    transport.push("new_message", {
        "id": 5, "conversation_id": 7, "expediteur_id": 99,
        "contenu": "bonjour", "created_at": "2026-01-01T12:00:00",
    })
    transport.push("user_stopped_typing", {"conversation_id": 7, "user_id": 99})
    transport.push("conversation_updated", {"conversation": conversation_payload(statut="fermee")})

    assert isinstance(messages[0], MessageReceived)
    assert messages[0].message.content == "bonjour"
    assert messages[0].message.created_at.tzinfo is not None
    assert typing == [TypingChanged(conversation_id=7, user_id=99, is_typing=False)]
    assert isinstance(updates[0], ConversationUpdated)
    assert updates[0].conversation.status == ConversationStatus.CLOSED


@pytest.mark.asyncio
async def test_malformed_payload_is_dropped(transport):
    session = make_session(transport)
    received = []
    session.on(EventKind.MESSAGE, received.append)
    await session.connect()

    transport.push("new_message", {"conversation_id": 7})

    assert received == []


@dataclass
class DropOnJoinTransport(FakeTransport):
    """Loses the socket during the next ``drops`` room re-joins."""

    drops: int = 1

    async def emit(self, event, data):
        if event == "join_conversation" and self.drops > 0:
            self.drops -= 1
            self.drop()
        await super().emit(event, data)


@pytest.mark.asyncio
async def test_drop_while_rejoining_rooms_reconnects():
    transport = DropOnJoinTransport()
    session = make_session(transport)
    events = []
    session.on(EventKind.CONNECT, lambda: events.append("connect"))
    session.on(EventKind.RECONNECT, lambda: events.append("reconnect"))
    session.on(EventKind.DISCONNECT, lambda reason: events.append("disconnect"))
    await session.join_room(5)

    await session.connect()

    assert session.is_connected
    assert transport.connect_calls == 2
    assert events == ["disconnect", "reconnect"]
    assert transport.emitted_named("join_conversation") == [{"conversation_id": 5}]
    assert session.reconnect_attempt == 0


@pytest.mark.asyncio
async def test_repeated_drops_while_rejoining_exhaust_the_budget():
    transport = DropOnJoinTransport(drops=10)
    session = make_session(transport, max_attempts=2)
    await session.join_room(5)

    with pytest.raises(ConnectionExhaustedError):
        await session.connect()

    assert transport.connect_calls == 3
    assert session.state == SessionState.ERROR


@pytest.mark.asyncio
async def test_drop_during_reconnect_rejoin_keeps_reconnecting():
    transport = DropOnJoinTransport(drops=0)
    session = make_session(transport)
    reconnected = []
    session.on(EventKind.RECONNECT, lambda: reconnected.append(True))
    await session.join_room(5)
    await session.connect()

    transport.drops = 1
    transport.drop()
    await wait_until(lambda: reconnected)

    assert session.is_connected
    assert transport.connect_calls == 3
    assert reconnected == [True]
