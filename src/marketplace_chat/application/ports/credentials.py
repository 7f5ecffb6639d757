from __future__ import annotations

from typing import Protocol


class CredentialStore(Protocol):
    def get_token(self) -> str | None: ...

    def set_token(self, token: str) -> None: ...

    def clear(self) -> None: ...
