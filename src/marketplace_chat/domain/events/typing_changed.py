from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class TypingChanged:
    conversation_id: int
    user_id: int
    is_typing: bool
    user_name: str | None = None
