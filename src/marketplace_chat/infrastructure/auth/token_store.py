from __future__ import annotations

import logging
import time
from typing import Any, Callable

import jwt

from marketplace_chat.application.dto.principal import Principal
from marketplace_chat.application.exceptions import AuthError
from marketplace_chat.domain.value_objects.enums import UserRole

logger = logging.getLogger(__name__)

# legacy numeric role ids
_ROLE_IDS = {1: UserRole.BUYER, 2: UserRole.SUPPLIER}


def read_claims(token: str) -> dict[str, Any]:
    """Decode JWT claims without verifying the signature.

    The signature is the server's business; the client only needs the
    subject, role and expiry.
    """
    try:
        return jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as exc:
        raise AuthError(f"Malformed credential: {exc}") from exc


def decode_principal(token: str) -> Principal:
    claims = read_claims(token)
    raw_id = claims.get("sub", claims.get("user_id", claims.get("id")))
    try:
        user_id = int(raw_id)
    except (TypeError, ValueError) as exc:
        raise AuthError("Credential carries no user id") from exc

    raw_role = claims.get("role", claims.get("role_id"))
    if raw_role in _ROLE_IDS:
        role = _ROLE_IDS[raw_role]
    elif raw_role in UserRole.__members__.values():
        role = UserRole(raw_role)
    else:
        role = UserRole.BUYER
    return Principal(user_id=user_id, role=role)


class MemoryTokenStore:
    """In-memory credential store.

    A token that expires within ``expiration_buffer`` seconds is reported
    as absent so that connection attempts fail fast with ``AuthError``.
    """

    def __init__(
        self,
        token: str | None = None,
        *,
        expiration_buffer: float = 300,
        now: Callable[[], float] = time.time,
    ) -> None:
        self._token = token
        self._buffer = expiration_buffer
        self._now = now

    def get_token(self) -> str | None:
        if not self._token:
            return None
        if self._expires_soon(self._token):
            logger.info("Stored credential is expired or about to expire")
            return None
        return self._token

    def set_token(self, token: str) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None

    def principal(self) -> Principal | None:
        token = self.get_token()
        return decode_principal(token) if token else None

    def _expires_soon(self, token: str) -> bool:
        try:
            exp = read_claims(token).get("exp")
        except AuthError:
            return False
        if exp is None:
            return False
        return float(exp) - self._buffer <= self._now()
