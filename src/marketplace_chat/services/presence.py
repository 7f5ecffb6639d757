"""Typing indicators: who is typing in which conversation, right now."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable

from marketplace_chat.application.ports.clock import Clock, SystemClock
from marketplace_chat.domain.entities.typing_entry import TypingEntry
from marketplace_chat.domain.events.typing_changed import TypingChanged

logger = logging.getLogger(__name__)

OnTypingChange = Callable[[int, tuple[int, ...]], None]


class TypingAggregator:
    """Deduplicated, self-expiring typing set per conversation.

    Every "typing" event (re)arms a timer for its (conversation, user)
    pair; the entry goes away on an explicit stop or when the timer
    fires, whichever comes first. Reads also ignore entries whose expiry
    has passed, so they never depend on timer scheduling.
    """

    def __init__(
        self,
        *,
        expiry: float = 3.0,
        clock: Clock | None = None,
        on_change: OnTypingChange | None = None,
    ) -> None:
        self._expiry = expiry
        self._clock = clock or SystemClock()
        self._on_change = on_change
        self._entries: dict[int, dict[int, TypingEntry]] = {}
        self._timers: dict[tuple[int, int], asyncio.TimerHandle] = {}

    def on_typing_event(self, event: TypingChanged) -> None:
        if event.is_typing:
            self._start(event.conversation_id, event.user_id)
        else:
            self._stop(event.conversation_id, event.user_id)

    def typing_users(self, conversation_id: int) -> tuple[int, ...]:
        now = self._clock.monotonic()
        entries = self._entries.get(conversation_id, {})
        return tuple(user_id for user_id, entry in entries.items() if entry.is_live(now))

    def is_typing(self, conversation_id: int, user_id: int) -> bool:
        return user_id in self.typing_users(conversation_id)

    def clear(self, conversation_id: int) -> None:
        entries = self._entries.pop(conversation_id, {})
        for user_id in entries:
            self._cancel_timer((conversation_id, user_id))
        if entries:
            self._changed(conversation_id)

    def close(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._entries.clear()

    def _start(self, conversation_id: int, user_id: int) -> None:
        key = (conversation_id, user_id)
        entries = self._entries.setdefault(conversation_id, {})
        is_new = user_id not in entries
        entries[user_id] = TypingEntry(
            conversation_id=conversation_id,
            user_id=user_id,
            expires_at=self._clock.monotonic() + self._expiry,
        )
        self._cancel_timer(key)
        self._timers[key] = asyncio.get_running_loop().call_later(
            self._expiry, self._expire, conversation_id, user_id,
        )
        if is_new:
            self._changed(conversation_id)

    def _stop(self, conversation_id: int, user_id: int) -> None:
        self._cancel_timer((conversation_id, user_id))
        if self._remove(conversation_id, user_id):
            self._changed(conversation_id)

    def _expire(self, conversation_id: int, user_id: int) -> None:
        self._timers.pop((conversation_id, user_id), None)
        if self._remove(conversation_id, user_id):
            logger.debug("Typing of user %d in %d expired", user_id, conversation_id)
            self._changed(conversation_id)

    def _remove(self, conversation_id: int, user_id: int) -> bool:
        entries = self._entries.get(conversation_id)
        if not entries or user_id not in entries:
            return False
        del entries[user_id]
        if not entries:
            del self._entries[conversation_id]
        return True

    def _cancel_timer(self, key: tuple[int, int]) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()

    def _changed(self, conversation_id: int) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(conversation_id, self.typing_users(conversation_id))
        except Exception:
            logger.exception("Typing listener failed for conversation %d", conversation_id)
