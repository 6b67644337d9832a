"""Unit tests for app.core.security."""
from datetime import timedelta

import pytest
from jose import jwt

from app.core.errors import AuthError
from app.core.security import create_access_token, decode_token, safe_str_compare


def test_create_and_decode_access_token(settings):
    token = create_access_token("user-123", "doctor", settings=settings)
    payload = decode_token(token, settings=settings)
    assert payload["sub"] == "user-123"
    assert payload["role"] == "doctor"
    assert payload["type"] == "access"


def test_tokens_are_unique(settings):
    a = create_access_token("user-123", "doctor", settings=settings)
    b = create_access_token("user-123", "doctor", settings=settings)
    assert a != b


def test_expired_token_rejected(settings):
    token = create_access_token(
        "user-123", "doctor", expires_delta=timedelta(seconds=-1), settings=settings
    )
    with pytest.raises(AuthError):
        decode_token(token, settings=settings)


def test_token_signed_with_other_secret_rejected(settings, settings_factory):
    other = settings_factory(jwt_secret_key="another-secret-key-that-is-long-enough")
    token = create_access_token("user-123", "doctor", settings=other)
    with pytest.raises(AuthError):
        decode_token(token, settings=settings)


def test_non_access_token_rejected(settings):
    token = jwt.encode(
        {"sub": "user-123", "type": "refresh"},
        settings.jwt_secret_key.get_secret_value(),
        algorithm=settings.jwt_algorithm,
    )
    with pytest.raises(AuthError):
        decode_token(token, settings=settings)


def test_garbage_token_rejected(settings):
    with pytest.raises(AuthError):
        decode_token("not.a.jwt", settings=settings)


def test_safe_str_compare():
    assert safe_str_compare("abc", "abc") is True
    assert safe_str_compare("abc", "abd") is False
    assert safe_str_compare("abc", "abcd") is False
