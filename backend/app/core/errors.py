"""
Structured error taxonomy for EchoVault.

Every application error has:
  - A stable error code (prefixed by domain)
  - An HTTP status code
  - A human-readable message
  - An optional detail dict for machine consumers

No internal state (stack traces, DB internals, note content) is ever
surfaced to clients.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Stable, versioned error codes. Never reuse a retired code."""

    # Auth
    AUTH_TOKEN_INVALID = "AUTH_001"
    AUTH_USER_INACTIVE = "AUTH_002"
    AUTH_INSUFFICIENT_PERMISSIONS = "AUTH_003"

    # Notes
    NOTE_NOT_FOUND = "NOTE_001"
    NOTE_ACCESS_DENIED = "NOTE_002"
    NOTE_VERSION_CONFLICT = "NOTE_003"
    NOTE_CONTEXT_INVALID = "NOTE_004"

    # Crypto
    CRYPTO_INTEGRITY_FAILED = "CRY_001"
    CRYPTO_KEY_NOT_FOUND = "CRY_002"
    CRYPTO_KEY_IN_USE = "CRY_003"

    # Audit
    AUDIT_WRITE_FAILED = "AUD_001"
    AUDIT_CHAIN_BROKEN = "AUD_002"

    # Storage
    STORAGE_UNAVAILABLE = "STO_001"

    # Generic
    VALIDATION_ERROR = "GEN_001"
    INTERNAL_ERROR = "GEN_002"
    NOT_FOUND = "GEN_003"
    RATE_LIMITED = "GEN_004"


class AppError(Exception):
    """Base class for all application errors."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        http_status: int = 500,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status
        self.detail = detail or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "detail": self.detail,
            }
        }


# ── Typed convenience subclasses ──────────────────────────────────────── #


class ValidationError(AppError):
    """Bad input: missing reason, malformed reference, empty content."""

    def __init__(
        self,
        message: str,
        detail: dict[str, Any] | None = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ) -> None:
        super().__init__(code=code, message=message, http_status=422, detail=detail)


class NotFoundError(AppError):
    def __init__(
        self, entity: str, entity_id: str | None = None, code: ErrorCode = ErrorCode.NOT_FOUND
    ) -> None:
        detail = {"entity": entity}
        if entity_id:
            detail["id"] = entity_id
        super().__init__(
            code=code,
            message=f"{entity} not found",
            http_status=404,
            detail=detail,
        )


class AuthError(AppError):
    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(code=code, message=message, http_status=401)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Insufficient permissions") -> None:
        super().__init__(
            code=ErrorCode.AUTH_INSUFFICIENT_PERMISSIONS,
            message=message,
            http_status=403,
        )


class AccessDeniedError(AppError):
    """Role, ownership or archived-state violation on a sensitive record."""

    def __init__(self, reason: str, record_id: str | None = None) -> None:
        detail: dict[str, Any] = {"reason": reason}
        if record_id:
            detail["record_id"] = record_id
        super().__init__(
            code=ErrorCode.NOTE_ACCESS_DENIED,
            message=f"Access denied: {reason}",
            http_status=403,
            detail=detail,
        )
        self.reason = reason


class ConflictError(AppError):
    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.NOTE_VERSION_CONFLICT,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(code=code, message=message, http_status=409, detail=detail)


class IntegrityError(AppError):
    """
    Ciphertext failed authentication or its plaintext hash does not match.

    Treated as tamper or corruption. Carries no plaintext.
    """

    def __init__(self, message: str = "Content integrity check failed", key_id: str | None = None) -> None:
        super().__init__(
            code=ErrorCode.CRYPTO_INTEGRITY_FAILED,
            message=message,
            http_status=500,
            detail={"key_id": key_id} if key_id else None,
        )
        self.key_id = key_id


class KeyNotFoundError(AppError):
    """Referenced key is unknown or revoked. Not retryable without key recovery."""

    def __init__(self, key_id: str, revoked: bool = False) -> None:
        super().__init__(
            code=ErrorCode.CRYPTO_KEY_NOT_FOUND,
            message=f"Encryption key {'revoked' if revoked else 'not found'}: {key_id}",
            http_status=500,
            detail={"key_id": key_id, "revoked": revoked},
        )
        self.key_id = key_id
        self.revoked = revoked


class AuditWriteFailedError(AppError):
    """
    The primary action happened (or plaintext was decrypted) but its audit
    entry was not persisted. Must be retried or escalated.
    """

    def __init__(self, record_id: str, action: str, cause: str) -> None:
        super().__init__(
            code=ErrorCode.AUDIT_WRITE_FAILED,
            message="Operation was not audited and is not complete",
            http_status=500,
            detail={"record_id": record_id, "action": action, "cause": cause},
        )
        self.record_id = record_id
        self.action = action


class PersistenceError(AppError):
    """Storage fault. ``retryable`` is False for creates to avoid duplicates."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(
            code=ErrorCode.STORAGE_UNAVAILABLE,
            message=message,
            http_status=503,
            detail={"retryable": retryable},
        )
        self.retryable = retryable


class RateLimitedError(AppError):
    def __init__(self, limit: str) -> None:
        super().__init__(
            code=ErrorCode.RATE_LIMITED,
            message=f"Rate limit exceeded: {limit}",
            http_status=429,
            detail={"limit": limit},
        )
