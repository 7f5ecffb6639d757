"""Realtime session: one connection, its reconnection policy and room intent."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Hashable, NoReturn

from pydantic import ValidationError as PayloadValidationError

from marketplace_chat.application.exceptions import (
    AppError,
    AuthError,
    ConnectionExhaustedError,
    ConnectTimeoutError,
    TransportError,
)
from marketplace_chat.application.policies.backoff import exponential_delay
from marketplace_chat.application.ports.credentials import CredentialStore
from marketplace_chat.application.ports.transport import RealtimeTransport
from marketplace_chat.domain.events.conversation_updated import ConversationUpdated
from marketplace_chat.domain.events.message_received import MessageReceived
from marketplace_chat.domain.events.message_status_changed import MessageStatusChanged
from marketplace_chat.domain.events.typing_changed import TypingChanged
from marketplace_chat.domain.value_objects.enums import EventKind, SessionState
from marketplace_chat.infrastructure.mappers import (
    conversation_to_entity,
    message_to_entity,
    parse_message_status,
)
from marketplace_chat.infrastructure.realtime import protocol
from marketplace_chat.infrastructure.realtime.protocol import (
    ConversationPayload,
    MessagePayload,
    MessageStatusPayload,
    TypingPayload,
)

logger = logging.getLogger(__name__)

Handler = Callable[..., None]

DEFAULT_OWNER = "default"


class TransportSession:
    """Owns the single realtime connection of the application.

    Build one instance at startup and pass it to every consumer. Each
    consumer registers its handlers under its own ``owner`` key: a second
    registration for the same (owner, kind) replaces the first, while
    different owners coexist and share the connection.

    Joined rooms are client intent. They survive reconnections and are
    re-joined every time a connection is (re)established; ``disconnect``
    is the only thing that forgets them.
    """

    def __init__(
        self,
        transport: RealtimeTransport,
        credentials: CredentialStore,
        *,
        url: str,
        connect_timeout: float = 10.0,
        max_attempts: int = 5,
        reconnect_delay: float = 2.0,
        growth_factor: float = 1.5,
        max_delay: float = 10.0,
        heartbeat_interval: float = 25.0,
    ) -> None:
        self._transport = transport
        self._credentials = credentials
        self._url = url
        self._connect_timeout = connect_timeout
        self._max_attempts = max_attempts
        self._reconnect_delay = reconnect_delay
        self._growth_factor = growth_factor
        self._max_delay = max_delay
        self._heartbeat_interval = heartbeat_interval

        self._state = SessionState.DISCONNECTED
        self._reconnect_attempt = 0
        self._rooms: set[int] = set()
        self._joined: set[int] = set()
        self._room_lock = asyncio.Lock()
        self._handlers: dict[Hashable, dict[EventKind, Handler]] = {}

        self._connect_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._closing = False

        self._transport.bind(self._on_transport_event, self._on_transport_disconnect)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == SessionState.CONNECTED

    @property
    def reconnect_attempt(self) -> int:
        return self._reconnect_attempt

    @property
    def rooms(self) -> frozenset[int]:
        return frozenset(self._rooms)

    # -- subscribers --------------------------------------------------------

    def on(self, kind: EventKind | str, handler: Handler, *, owner: Hashable = DEFAULT_OWNER) -> None:
        self._handlers.setdefault(owner, {})[EventKind(kind)] = handler

    def off(self, owner: Hashable = DEFAULT_OWNER, kind: EventKind | str | None = None) -> None:
        """Drop one handler of ``owner``, or all of them."""
        if kind is None:
            self._handlers.pop(owner, None)
            return
        handlers = self._handlers.get(owner)
        if handlers:
            handlers.pop(EventKind(kind), None)
            if not handlers:
                del self._handlers[owner]

    # -- lifecycle ----------------------------------------------------------

    async def connect(self) -> None:
        """Connect, or join the attempt already in flight.

        Raises ``AuthError`` without retrying when no credential is
        available. Transient failures are retried with backoff; once the
        budget is spent the last timeout is raised as
        ``ConnectTimeoutError``, anything else as
        ``ConnectionExhaustedError``.
        """
        if self._state == SessionState.CONNECTED:
            return
        task = self._connect_task
        if task is None or task.done():
            self._closing = False
            self._reconnect_attempt = 0
            task = self._start_establish(reconnecting=False)
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled() and self._closing:
                logger.debug("Connect aborted by disconnect()")
                return
            raise

    async def disconnect(self) -> None:
        """Tear down the connection and forget every joined room.

        Pending reconnection timers and the heartbeat are cancelled, so no
        automatic reconnection fires afterwards.
        """
        self._closing = True
        current = asyncio.current_task()
        tasks = [
            t for t in (self._connect_task, self._heartbeat_task)
            if t is not None and t is not current
        ]
        self._connect_task = None
        self._heartbeat_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        was_connected = self._state == SessionState.CONNECTED
        self._rooms.clear()
        self._joined.clear()
        self._reconnect_attempt = 0
        await self._transport.disconnect()
        self._set_state(SessionState.DISCONNECTED)
        if was_connected:
            self._dispatch(EventKind.DISCONNECT, "client disconnect")
        logger.info("Realtime session closed")

    # -- rooms --------------------------------------------------------------

    async def join_room(self, conversation_id: int) -> None:
        self._rooms.add(conversation_id)
        if self._state != SessionState.CONNECTED:
            logger.debug("Room %d recorded, joined on next connect", conversation_id)
            return
        async with self._room_lock:
            if (
                self._state == SessionState.CONNECTED
                and conversation_id in self._rooms
                and conversation_id not in self._joined
            ):
                if await self._emit(protocol.EMIT_JOIN, {"conversation_id": conversation_id}):
                    self._joined.add(conversation_id)

    async def leave_room(self, conversation_id: int) -> None:
        self._rooms.discard(conversation_id)
        if self._state != SessionState.CONNECTED:
            return
        async with self._room_lock:
            if (
                self._state == SessionState.CONNECTED
                and conversation_id not in self._rooms
                and conversation_id in self._joined
            ):
                await self._emit(protocol.EMIT_LEAVE, {"conversation_id": conversation_id})
                self._joined.discard(conversation_id)

    # -- fire-and-forget emissions -------------------------------------------

    async def send_typing(self, conversation_id: int, is_typing: bool) -> None:
        if self._state != SessionState.CONNECTED:
            return
        event = protocol.EMIT_TYPING_START if is_typing else protocol.EMIT_TYPING_STOP
        await self._emit(event, {"conversation_id": conversation_id})

    async def mark_read(self, conversation_id: int, message_id: int) -> None:
        if self._state != SessionState.CONNECTED:
            return
        await self._emit(
            protocol.EMIT_MARK_READ,
            {"conversation_id": conversation_id, "message_id": message_id},
        )

    # -- connection establishment -------------------------------------------

    def _start_establish(self, *, reconnecting: bool) -> asyncio.Task[None]:
        task = asyncio.create_task(
            self._establish(reconnecting=reconnecting),
            name="realtime-reconnect" if reconnecting else "realtime-connect",
        )
        task.add_done_callback(self._on_establish_done)
        self._connect_task = task
        return task

    def _on_establish_done(self, task: asyncio.Task[None]) -> None:
        if self._connect_task is task:
            self._connect_task = None
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Connection attempt ended: %r", task.exception())

    async def _establish(self, *, reconnecting: bool) -> None:
        last_error: AppError | None = None
        while True:
            if reconnecting or last_error is not None:
                if self._reconnect_attempt >= self._max_attempts:
                    self._give_up(last_error, reconnecting=reconnecting)
                delay = exponential_delay(
                    self._reconnect_delay,
                    self._reconnect_attempt,
                    factor=self._growth_factor,
                    cap=self._max_delay,
                )
                self._reconnect_attempt += 1
                logger.info(
                    "Reconnecting in %.1fs (attempt %d/%d)",
                    delay, self._reconnect_attempt, self._max_attempts,
                )
                await asyncio.sleep(delay)

            token = self._credentials.get_token()
            if not token:
                error = AuthError("No credential available")
                self._set_state(SessionState.ERROR)
                self._dispatch(EventKind.ERROR, error)
                raise error

            self._set_state(SessionState.CONNECTING)
            try:
                await asyncio.wait_for(
                    self._transport.connect(self._url, {"token": token}),
                    timeout=self._connect_timeout,
                )
            except TimeoutError:
                last_error = ConnectTimeoutError(
                    f"No connect acknowledgment within {self._connect_timeout:g}s"
                )
            except TransportError as exc:
                last_error = exc
            else:
                if await self._on_connected(reconnected=reconnecting or self._reconnect_attempt > 0):
                    return
                # dropped again while re-joining; the drop was already reported
                reconnecting = True
                last_error = TransportError("Connection dropped while re-joining rooms")
                continue

            logger.warning("Realtime connect failed: %s", last_error.detail)
            self._set_state(SessionState.DISCONNECTED)
            self._dispatch(EventKind.ERROR, last_error)

    def _give_up(self, last_error: AppError | None, *, reconnecting: bool) -> NoReturn:
        exhausted = ConnectionExhaustedError(
            f"Realtime connection lost after {self._max_attempts} attempts"
        )
        logger.warning("%s", exhausted.detail)
        self._set_state(SessionState.ERROR)
        self._dispatch(EventKind.ERROR, exhausted)
        if not reconnecting and isinstance(last_error, ConnectTimeoutError):
            raise last_error
        raise exhausted from last_error

    async def _on_connected(self, *, reconnected: bool) -> bool:
        """Re-join rooms on the fresh socket, then announce it.

        Returns False when the socket dropped before the re-join finished;
        the caller goes back to backoff and nothing is announced.
        """
        self._set_state(SessionState.CONNECTED)
        async with self._room_lock:
            self._joined.clear()
            for conversation_id in sorted(self._rooms):
                if self._state != SessionState.CONNECTED:
                    break
                joined = await self._emit(protocol.EMIT_JOIN, {"conversation_id": conversation_id})
                if joined and self._state == SessionState.CONNECTED:
                    self._joined.add(conversation_id)
        if self._state != SessionState.CONNECTED:
            logger.warning("Realtime connection dropped while re-joining %d rooms", len(self._rooms))
            return False

        self._reconnect_attempt = 0
        self._start_heartbeat()
        logger.info(
            "Realtime session %s (%d rooms)",
            "reconnected" if reconnected else "connected",
            len(self._joined),
        )
        self._dispatch(EventKind.RECONNECT if reconnected else EventKind.CONNECT)
        return True

    def _on_transport_disconnect(self, reason: str) -> None:
        if self._closing or self._state != SessionState.CONNECTED:
            return
        logger.warning("Realtime connection dropped: %s", reason)
        self._stop_heartbeat()
        self._joined.clear()
        self._set_state(SessionState.DISCONNECTED)
        self._dispatch(EventKind.DISCONNECT, reason)
        # an establishing task still re-joining rooms notices the drop itself
        if self._connect_task is None or self._connect_task.done():
            self._start_establish(reconnecting=True)

    # -- heartbeat ----------------------------------------------------------

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        if self._heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(
                self._heartbeat(), name="realtime-heartbeat",
            )

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def _heartbeat(self) -> None:
        while self._state == SessionState.CONNECTED:
            await asyncio.sleep(self._heartbeat_interval)
            if self._state != SessionState.CONNECTED:
                return
            await self._emit(protocol.EMIT_PING, {})

    # -- inbound events -----------------------------------------------------

    def _on_transport_event(self, event: str, data: dict[str, Any]) -> None:
        name, data = protocol.canonical_event(event, data)
        try:
            if name == protocol.EVENT_NEW_MESSAGE:
                message = message_to_entity(MessagePayload.model_validate(data))
                self._dispatch(EventKind.MESSAGE, MessageReceived(message))

            elif name == protocol.EVENT_USER_TYPING:
                typing = TypingPayload.model_validate(data)
                self._dispatch(
                    EventKind.TYPING,
                    TypingChanged(
                        conversation_id=typing.conversation_id,
                        user_id=typing.user_id,
                        is_typing=typing.is_typing,
                        user_name=typing.user_name,
                    ),
                )

            elif name == protocol.EVENT_MESSAGE_STATUS:
                update = MessageStatusPayload.model_validate(data)
                status = parse_message_status(update.status)
                if status is None:
                    logger.warning("Unknown message status %r", update.status)
                    return
                self._dispatch(
                    EventKind.MESSAGE_STATUS,
                    MessageStatusChanged(update.message_id, status, update.conversation_id),
                )

            elif name == protocol.EVENT_CONVERSATION_UPDATED:
                raw = data.get("conversation", data)
                conversation = conversation_to_entity(ConversationPayload.model_validate(raw))
                self._dispatch(EventKind.CONVERSATION_UPDATED, ConversationUpdated(conversation))

            else:
                logger.debug("Ignoring realtime event %s", name)
        except PayloadValidationError:
            logger.warning("Dropping malformed %s payload", name, exc_info=True)

    # -- helpers ------------------------------------------------------------

    async def _emit(self, event: str, data: dict[str, Any]) -> bool:
        try:
            await self._transport.emit(event, data)
        except TransportError as exc:
            logger.warning("Emit %s failed: %s", event, exc.detail)
            return False
        return True

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        logger.debug("Realtime state %s -> %s", self._state, state)
        self._state = state
        self._dispatch(EventKind.STATE_CHANGED, state)

    def _dispatch(self, kind: EventKind, *args: Any) -> None:
        for owner, handlers in list(self._handlers.items()):
            handler = handlers.get(kind)
            if handler is None:
                continue
            try:
                handler(*args)
            except Exception:
                logger.exception("Realtime %s handler of %r failed", kind, owner)
