from __future__ import annotations

import time

import pytest

from marketplace_chat.application.exceptions import AuthError
from marketplace_chat.domain.value_objects.enums import UserRole
from marketplace_chat.infrastructure.auth.token_store import MemoryTokenStore, decode_principal
from tests.conftest import make_token


def test_principal_from_claims():
    principal = decode_principal(make_token(sub=42, role="supplier"))

    assert principal.user_id == 42
    assert principal.role == UserRole.SUPPLIER
    assert not principal.is_buyer


@pytest.mark.parametrize(("role", "expected"), [(1, UserRole.BUYER), (2, UserRole.SUPPLIER), ("admin", UserRole.BUYER)])
def test_role_mapping(role, expected):
    assert decode_principal(make_token(role=role)).role == expected


def test_malformed_token_raises_auth_error():
    with pytest.raises(AuthError):
        decode_principal("not-a-jwt")


def test_store_hides_token_close_to_expiry():
    fresh = make_token(expires_in=3600)
    expiring = make_token(expires_in=120)

    assert MemoryTokenStore(fresh).get_token() == fresh
    assert MemoryTokenStore(expiring).get_token() is None
    assert MemoryTokenStore(expiring, expiration_buffer=60).get_token() == expiring


def test_store_uses_injected_clock():
    token = make_token(expires_in=3600)
    store = MemoryTokenStore(token, now=lambda: time.time() + 7200)

    assert store.get_token() is None


def test_token_without_expiry_is_kept():
    token = make_token(expires_in=None)

    assert MemoryTokenStore(token).get_token() == token


def test_set_and_clear():
    store = MemoryTokenStore()
    assert store.get_token() is None
    assert store.principal() is None

    token = make_token(sub=7)
    store.set_token(token)
    assert store.principal().user_id == 7

    store.clear()
    assert store.get_token() is None
