"""
Security utilities: JWT creation and verification.

Secrets are never logged. Token problems surface as AuthError.
"""

from __future__ import annotations

import secrets
from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from app.config.settings import Settings, get_settings
from app.core.errors import AuthError, ErrorCode


def _now_utc() -> datetime:
    return datetime.now(UTC)


def create_access_token(
    subject: str,
    role: str,
    expires_delta: timedelta | None = None,
    settings: Settings | None = None,
) -> str:
    """
    Create a signed JWT access token.

    Args:
        subject: The user ID (``sub`` claim).
        role: The user role name.
        expires_delta: Override for the configured TTL.
        settings: Settings to sign with; defaults to the cached singleton.

    Returns:
        Signed compact JWT string.
    """
    cfg = settings or get_settings()
    ttl = expires_delta or timedelta(minutes=cfg.jwt_access_token_expire_minutes)
    payload: dict[str, object] = {
        "sub": subject,
        "role": role,
        "iat": _now_utc(),
        "exp": _now_utc() + ttl,
        "type": "access",
        "jti": secrets.token_hex(16),
    }
    return jwt.encode(
        payload,
        cfg.jwt_secret_key.get_secret_value(),
        algorithm=cfg.jwt_algorithm,
    )


def decode_token(token: str, settings: Settings | None = None) -> dict[str, object]:
    """
    Decode and validate an access token.

    Raises:
        AuthError: If the token is invalid, expired, tampered with,
            or not an access token.
    """
    cfg = settings or get_settings()
    try:
        payload: dict[str, object] = jwt.decode(
            token,
            cfg.jwt_secret_key.get_secret_value(),
            algorithms=[cfg.jwt_algorithm],
        )
    except JWTError as exc:
        raise AuthError(ErrorCode.AUTH_TOKEN_INVALID, "Token invalid or expired") from exc

    if payload.get("type") != "access":
        raise AuthError(ErrorCode.AUTH_TOKEN_INVALID, "Token is not an access token")
    return payload


def safe_str_compare(a: str, b: str) -> bool:
    """Constant-time string comparison to prevent timing attacks."""
    return secrets.compare_digest(a.encode(), b.encode())


__all__ = [
    "create_access_token",
    "decode_token",
    "safe_str_compare",
]
