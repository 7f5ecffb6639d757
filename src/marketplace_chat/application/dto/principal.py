from __future__ import annotations

from dataclasses import dataclass

from marketplace_chat.domain.value_objects.enums import UserRole


@dataclass(frozen=True, slots=True)
class Principal:
    """Local user identity read from the credential."""

    user_id: int
    role: UserRole

    @property
    def is_buyer(self) -> bool:
        return self.role == UserRole.BUYER
