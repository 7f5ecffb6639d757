from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from marketplace_chat.application.dto.principal import Principal
from marketplace_chat.application.exceptions import AppError, AuthError, ConnectionExhaustedError
from marketplace_chat.application.policies.permissions import assert_can_send
from marketplace_chat.application.ports.clock import Clock, SystemClock
from marketplace_chat.application.ports.request import RequestLayer
from marketplace_chat.application.ports.transport import RealtimeTransport
from marketplace_chat.config import Settings, settings
from marketplace_chat.domain.entities.message import ChatEntry
from marketplace_chat.domain.events.conversation_updated import ConversationUpdated
from marketplace_chat.domain.events.message_received import MessageReceived
from marketplace_chat.domain.events.message_status_changed import MessageStatusChanged
from marketplace_chat.domain.events.typing_changed import TypingChanged
from marketplace_chat.domain.value_objects.enums import EventKind
from marketplace_chat.infrastructure.auth.token_store import MemoryTokenStore
from marketplace_chat.infrastructure.http.request_layer import HttpRequestLayer
from marketplace_chat.infrastructure.realtime.session import TransportSession
from marketplace_chat.infrastructure.realtime.socketio_transport import SocketIOTransport
from marketplace_chat.services.conversation_store import ConversationStore
from marketplace_chat.services.message_queue import OptimisticMessageQueue
from marketplace_chat.services.messaging_api import MessagingApi
from marketplace_chat.services.presence import TypingAggregator
from marketplace_chat.services.unread import UnreadSnapshot

logger = logging.getLogger(__name__)


class ChatClient:
    """Routes realtime events into the queues, presence and conversations."""

    def __init__(
        self,
        session: TransportSession,
        api: MessagingApi,
        credentials: MemoryTokenStore,
        *,
        config: Settings = settings,
        clock: Clock | None = None,
        owned_requests: HttpRequestLayer | None = None,
    ) -> None:
        self.session = session
        self.api = api
        self._credentials = credentials
        self._config = config
        self._clock = clock or SystemClock()
        self._owned_requests = owned_requests

        self.conversations = ConversationStore()
        self.presence = TypingAggregator(expiry=config.TYPING_TIMEOUT, clock=self._clock)
        self.connection_error: AppError | None = None
        self._queues: dict[int, OptimisticMessageQueue] = {}
        self._viewing: set[int] = set()
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def principal(self) -> Principal | None:
        return self.conversations.principal

    @property
    def unread(self) -> UnreadSnapshot:
        return self.conversations.unread

    def queue(self, conversation_id: int) -> OptimisticMessageQueue:
        """Message list of one conversation, created on first use.

        Raises ``AuthError`` before ``start()`` has resolved the local user,
        since every optimistic entry is stamped with its sender.
        """
        queue = self._queues.get(conversation_id)
        if queue is None:
            principal = self._require_principal()
            queue = OptimisticMessageQueue(
                conversation_id,
                self.api,
                sender_id=principal.user_id,
                max_retries=self._config.SEND_MAX_RETRIES,
                retry_delay=self._config.SEND_RETRY_DELAY,
                max_length=self._config.MESSAGE_MAX_LENGTH,
                clock=self._clock,
            )
            conversation = self.conversations.get(conversation_id)
            queue.conversation_closed = bool(conversation and conversation.is_closed)
            self._queues[conversation_id] = queue
        return queue

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        self.conversations.principal = self._credentials.principal()
        self.session.on(EventKind.MESSAGE, self._on_message, owner=self)
        self.session.on(EventKind.TYPING, self._on_typing, owner=self)
        self.session.on(EventKind.MESSAGE_STATUS, self._on_message_status, owner=self)
        self.session.on(EventKind.CONVERSATION_UPDATED, self._on_conversation_updated, owner=self)
        self.session.on(EventKind.RECONNECT, self._on_reconnect, owner=self)
        self.session.on(EventKind.CONNECT, self._on_connect, owner=self)
        self.session.on(EventKind.ERROR, self._on_error, owner=self)
        await self.session.connect()
        self.conversations.replace_all(await self.api.list_conversations())

    async def stop(self) -> None:
        for queue in self._queues.values():
            queue.close()
        self.presence.close()
        for task in self._background:
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self.session.off(self)
        await self.session.disconnect()
        if self._owned_requests is not None:
            await self._owned_requests.aclose()

    # -- consumer operations -------------------------------------------------

    async def open_conversation(self, conversation_id: int) -> list[ChatEntry]:
        self._viewing.add(conversation_id)
        await self.session.join_room(conversation_id)
        queue = self.queue(conversation_id)
        queue.load_history(await self.api.list_messages(conversation_id))
        await self.mark_conversation_read(conversation_id)
        return queue.messages

    async def leave_conversation(self, conversation_id: int) -> None:
        self._viewing.discard(conversation_id)
        self.presence.clear(conversation_id)
        await self.session.leave_room(conversation_id)

    async def send_message(
        self,
        conversation_id: int,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChatEntry:
        queue = self.queue(conversation_id)
        assert_can_send(self.conversations.get(conversation_id), queue.conversation_closed)
        return await queue.send_message(content, metadata)

    async def set_typing(self, conversation_id: int, is_typing: bool) -> None:
        await self.session.send_typing(conversation_id, is_typing)

    async def mark_conversation_read(self, conversation_id: int) -> None:
        """Zero the local badge, persist read receipts, then notify the room."""
        queue = self.queue(conversation_id)
        self.conversations.mark_read(conversation_id)
        unread = queue.unread_ids(self._require_principal().user_id)
        if unread:
            try:
                await self.api.mark_as_read(conversation_id, unread)
            except AppError as exc:
                logger.warning("Read receipts for conversation %d failed: %s", conversation_id, exc.detail)
            else:
                for message_id in unread:
                    queue.update_message(message_id, read=True)
        last = queue.last_confirmed()
        if last is not None:
            await self.session.mark_read(conversation_id, last.id)

    # -- realtime handlers ----------------------------------------------------

    def _on_message(self, event: MessageReceived) -> None:
        message = event.message
        self.queue(message.conversation_id).add_message(message)
        self.conversations.record_message(message, viewing=message.conversation_id in self._viewing)

    def _on_typing(self, event: TypingChanged) -> None:
        principal = self.principal
        if principal is not None and event.user_id == principal.user_id:
            return
        self.presence.on_typing_event(event)

    def _on_message_status(self, event: MessageStatusChanged) -> None:
        if event.conversation_id is not None:
            queue = self._queues.get(event.conversation_id)
            if queue is not None:
                queue.apply_status(event.message_id, event.status)
            return
        for queue in self._queues.values():
            if queue.apply_status(event.message_id, event.status):
                return

    def _on_conversation_updated(self, event: ConversationUpdated) -> None:
        conversation = event.conversation
        self.conversations.upsert(conversation)
        queue = self._queues.get(conversation.id)
        if queue is not None:
            queue.conversation_closed = conversation.is_closed

    def _on_connect(self) -> None:
        self.connection_error = None

    def _on_reconnect(self) -> None:
        self.connection_error = None
        task = asyncio.create_task(self._refresh_conversations(), name="conversations-refresh")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_error(self, error: AppError) -> None:
        if isinstance(error, ConnectionExhaustedError):
            self.connection_error = error

    def _require_principal(self) -> Principal:
        principal = self.principal
        if principal is None:
            raise AuthError("No signed-in user; call start() first")
        return principal

    async def _refresh_conversations(self) -> None:
        try:
            self.conversations.replace_all(await self.api.list_conversations())
        except AppError as exc:
            logger.warning("Conversation refresh after reconnect failed: %s", exc.detail)


def create_client(
    config: Settings = settings,
    *,
    credentials: MemoryTokenStore | None = None,
    transport: RealtimeTransport | None = None,
    requests: RequestLayer | None = None,
) -> ChatClient:
    credentials = credentials or MemoryTokenStore(
        config.AUTH_TOKEN or None,
        expiration_buffer=config.TOKEN_EXPIRATION_BUFFER,
    )
    owned: HttpRequestLayer | None = None
    if requests is None:
        owned = HttpRequestLayer(config.API_URL, credentials, timeout=config.REQUEST_TIMEOUT)
        requests = owned
    session = TransportSession(
        transport or SocketIOTransport(path=config.SOCKET_PATH, wait_timeout=config.CONNECT_TIMEOUT),
        credentials,
        url=config.SOCKET_URL,
        connect_timeout=config.CONNECT_TIMEOUT,
        max_attempts=config.RECONNECT_ATTEMPTS,
        reconnect_delay=config.RECONNECT_DELAY,
        growth_factor=config.RECONNECT_GROWTH,
        max_delay=config.RECONNECT_MAX_DELAY,
        heartbeat_interval=config.HEARTBEAT_SECONDS,
    )
    return ChatClient(
        session,
        MessagingApi(requests),
        credentials,
        config=config,
        owned_requests=owned,
    )


@asynccontextmanager
async def chat_client(config: Settings = settings, **kwargs: Any) -> AsyncIterator[ChatClient]:
    """Startup / shutdown lifecycle."""
    client = create_client(config, **kwargs)
    try:
        await client.start()
        yield client
    finally:
        await client.stop()
