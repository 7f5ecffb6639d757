from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class TypingEntry:
    conversation_id: int
    user_id: int
    expires_at: float

    def is_live(self, now: float) -> bool:
        return now < self.expires_at
