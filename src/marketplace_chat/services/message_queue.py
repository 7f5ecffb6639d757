"""Optimistic send pipeline for one conversation.

A compose action appears in ``messages`` as an ``OptimisticMessage``
before the request layer answers. The answer either replaces the entry in
place with the server's ``Message`` or marks it ``error`` and schedules a
retry with exponential backoff.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Iterable

from marketplace_chat.application.exceptions import AppError, SendError, ValidationError
from marketplace_chat.application.policies.backoff import exponential_delay
from marketplace_chat.application.ports.clock import Clock, SystemClock
from marketplace_chat.application.ports.messages import MessageSender
from marketplace_chat.domain.entities.message import ChatEntry, Message, OptimisticMessage
from marketplace_chat.domain.value_objects.enums import MessageStatus
from marketplace_chat.domain.value_objects.ids import new_temp_id

logger = logging.getLogger(__name__)

OnChangeCallback = Callable[[list[ChatEntry]], None]


class OptimisticMessageQueue:
    def __init__(
        self,
        conversation_id: int,
        sender: MessageSender,
        *,
        sender_id: int,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        max_length: int = 5000,
        clock: Clock | None = None,
        on_change: OnChangeCallback | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self._sender = sender
        self._sender_id = sender_id
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._max_length = max_length
        self._clock = clock or SystemClock()
        self._on_change = on_change

        self._entries: list[ChatEntry] = []
        self._in_flight: set[str] = set()
        self._retry_timers: dict[str, asyncio.Task[None]] = {}
        self._closed = False
        self.conversation_closed = False

    # -- views --------------------------------------------------------------

    @property
    def messages(self) -> list[ChatEntry]:
        return list(self._entries)

    @property
    def sending_count(self) -> int:
        return sum(1 for e in self._optimistic() if e.status == MessageStatus.SENDING)

    @property
    def error_count(self) -> int:
        return sum(1 for e in self._optimistic() if e.status == MessageStatus.ERROR)

    @property
    def accepts_sends(self) -> bool:
        return not self.conversation_closed

    def has_pending_retry(self, temp_id: str) -> bool:
        return temp_id in self._retry_timers

    def unread_ids(self, reader_id: int) -> list[int]:
        """Confirmed messages from other senders that ``reader_id`` has not read."""
        return [
            e.id for e in self._entries
            if isinstance(e, Message) and not e.read and e.sender_id != reader_id
        ]

    def last_confirmed(self) -> Message | None:
        for entry in reversed(self._entries):
            if isinstance(entry, Message):
                return entry
        return None

    # -- sending ------------------------------------------------------------

    async def send_message(self, content: str, metadata: dict[str, Any] | None = None) -> ChatEntry:
        """Append an optimistic entry, then send it.

        The entry is visible before the first suspension point. Send
        failures never raise: they leave the entry in ``error`` state.
        """
        text = (content or "").strip()
        if not text:
            raise ValidationError("Message content cannot be empty")
        if len(text) > self._max_length:
            raise ValidationError(f"Message exceeds {self._max_length} characters")

        entry = OptimisticMessage(
            id=new_temp_id(),
            conversation_id=self.conversation_id,
            sender_id=self._sender_id,
            content=text,
            created_at=self._clock.now(),
            metadata=metadata,
        )
        self._entries.append(entry)
        self._in_flight.add(entry.id)
        self._changed()
        return await self._dispatch(entry)

    async def retry_message(self, temp_id: str) -> ChatEntry | None:
        """Send an errored entry again.

        A retry already in flight for the same entry is not duplicated.
        """
        entry = self._find(temp_id)
        if entry is None:
            logger.warning("No pending message %s to retry", temp_id)
            return None
        if temp_id in self._in_flight or entry.status != MessageStatus.ERROR:
            return entry

        self._cancel_retry(temp_id)
        self._in_flight.add(temp_id)
        entry.retry_count += 1
        entry.status = MessageStatus.SENDING
        entry.error = None
        self._changed()
        return await self._dispatch(entry)

    def remove_message(self, temp_id: str) -> bool:
        """Discard an errored entry and its pending retry."""
        entry = self._find(temp_id)
        if entry is None or entry.status != MessageStatus.ERROR or temp_id in self._in_flight:
            return False
        self._cancel_retry(temp_id)
        self._entries = [e for e in self._entries if e is not entry]
        self._changed()
        return True

    def clear_errors(self) -> int:
        failed = [e for e in self._optimistic() if e.status == MessageStatus.ERROR]
        for entry in failed:
            self._cancel_retry(entry.id)
        self._entries = [e for e in self._entries if not any(e is f for f in failed)]
        if failed:
            self._changed()
        return len(failed)

    # -- server-side updates -------------------------------------------------

    def add_message(self, message: Message) -> None:
        """Merge a server-pushed message, de-duplicating by id."""
        if message.conversation_id != self.conversation_id:
            logger.debug(
                "Message %d belongs to conversation %d, not %d",
                message.id, message.conversation_id, self.conversation_id,
            )
            return
        index = self._index_of(message.id)
        if index is not None:
            current = self._entries[index]
            self._entries[index] = replace(message, read=message.read or getattr(current, "read", False))
        else:
            self._entries.insert(self._insertion_point(message), message)
        self._changed()

    def load_history(self, history: Iterable[Message]) -> None:
        """Seed confirmed messages; pending optimistic entries stay last."""
        confirmed = {e.id: e for e in self._entries if isinstance(e, Message)}
        for message in history:
            if message.conversation_id == self.conversation_id:
                confirmed[message.id] = message
        pending = list(self._optimistic())
        self._entries = sorted(confirmed.values(), key=lambda m: m.created_at) + pending
        self._changed()

    def apply_status(self, message_id: int, status: MessageStatus) -> bool:
        index = self._index_of(message_id)
        if index is None:
            return False
        current = self._entries[index]
        if not isinstance(current, Message):
            return False
        self._entries[index] = replace(
            current, status=status, read=current.read or status == MessageStatus.READ,
        )
        self._changed()
        return True

    def update_message(self, message_id: int | str, **changes: Any) -> bool:
        index = self._index_of(message_id)
        if index is None:
            return False
        self._entries[index] = replace(self._entries[index], **changes)
        self._changed()
        return True

    def close(self) -> None:
        """Cancel every retry timer owned by this queue.

        Requests already dispatched still reconcile when they return.
        """
        self._closed = True
        for task in self._retry_timers.values():
            task.cancel()
        self._retry_timers.clear()

    # -- internals ----------------------------------------------------------

    async def _dispatch(self, entry: OptimisticMessage) -> ChatEntry:
        try:
            confirmed = await self._sender.send_message(
                self.conversation_id, entry.content, entry.metadata,
            )
        except asyncio.CancelledError:
            self._in_flight.discard(entry.id)
            self._fail(entry.id, SendError("Send cancelled"), schedule=False)
            raise
        except Exception as exc:
            self._in_flight.discard(entry.id)
            detail = exc.detail if isinstance(exc, AppError) else str(exc)
            return self._fail(entry.id, SendError(detail or exc.__class__.__name__)) or entry
        self._in_flight.discard(entry.id)
        return self._confirm(entry.id, confirmed)

    def _confirm(self, temp_id: str, message: Message) -> Message:
        if message.status == MessageStatus.SENDING:
            message = replace(message, status=MessageStatus.SENT)
        index = self._index_of(temp_id)
        if index is None:
            self.add_message(message)
            return message
        self._entries[index] = message
        # the server echo may have been merged before the response arrived
        self._entries = [
            e for i, e in enumerate(self._entries) if i == index or e.id != message.id
        ]
        if self.conversation_closed:
            logger.debug("Reconciled %s into closed conversation %d", temp_id, self.conversation_id)
        self._changed()
        return message

    def _fail(self, temp_id: str, error: SendError, *, schedule: bool = True) -> OptimisticMessage | None:
        # re-read: the entry may have been updated while the request was in flight
        entry = self._find(temp_id)
        if entry is None:
            return None
        entry.status = MessageStatus.ERROR
        entry.error = error.detail
        if entry.retry_count < self._max_retries:
            if schedule and not self._closed:
                self._schedule_retry(entry)
        else:
            logger.warning(
                "Message %s failed after %d retries: %s", temp_id, entry.retry_count, error.detail,
            )
        self._changed()
        return entry

    def _schedule_retry(self, entry: OptimisticMessage) -> None:
        delay = exponential_delay(self._retry_delay, entry.retry_count)
        self._cancel_retry(entry.id)
        self._retry_timers[entry.id] = asyncio.create_task(
            self._retry_later(entry.id, delay), name=f"message-retry-{entry.id}",
        )
        logger.debug("Retrying %s in %.2fs", entry.id, delay)

    async def _retry_later(self, temp_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._retry_timers.pop(temp_id, None)
        await self.retry_message(temp_id)

    def _cancel_retry(self, temp_id: str) -> None:
        task = self._retry_timers.pop(temp_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _insertion_point(self, message: Message) -> int:
        index = len(self._entries)
        while index > 0 and self._entries[index - 1].created_at > message.created_at:
            index -= 1
        return index

    def _optimistic(self) -> Iterable[OptimisticMessage]:
        return (e for e in self._entries if isinstance(e, OptimisticMessage))

    def _find(self, temp_id: str) -> OptimisticMessage | None:
        for entry in self._optimistic():
            if entry.id == temp_id:
                return entry
        return None

    def _index_of(self, entry_id: int | str) -> int | None:
        for index, entry in enumerate(self._entries):
            if entry.id == entry_id and type(entry.id) is type(entry_id):
                return index
        return None

    def _changed(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.messages)
        except Exception:
            logger.exception("Message list listener failed for conversation %d", self.conversation_id)
