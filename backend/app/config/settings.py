"""
Application configuration via Pydantic Settings.

All values are sourced from environment variables or an .env file.
No defaults expose insecure behaviour in production.
"""

from __future__ import annotations

import base64
import binascii
from enum import StrEnum
from functools import lru_cache
from typing import Annotated

from pydantic import (
    BeforeValidator,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Environment(StrEnum):
    """Deployment environment identifiers."""

    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


class LogLevel(StrEnum):
    """Structured log level options."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def _parse_csv(value: str | list[str]) -> list[str]:
    """Accept comma-separated string or list."""
    if isinstance(value, list):
        return value
    return [item.strip() for item in value.split(",") if item.strip()]


CsvList = Annotated[list[str], NoDecode, BeforeValidator(_parse_csv)]


class Settings(BaseSettings):
    """
    Centralised, type-validated application configuration.

    Reads from environment variables with an optional .env file.
    All secrets are Pydantic SecretStr to prevent accidental logging.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="forbid",
    )

    # ── Application ────────────────────────────────────────────────────── #
    app_name: str = Field(default="EchoVault", description="Human-readable application name")
    app_version: str = Field(default="1.0.0", description="Semantic version string")
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment (development|testing|production)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode. Must be False in production.",
    )

    # ── Server ─────────────────────────────────────────────────────────── #
    host: str = Field(default="127.0.0.1", description="Bind host. Default local-only.")
    port: int = Field(default=8000, ge=1024, le=65535, description="Bind port")
    reload: bool = Field(default=False, description="Auto-reload on code change (dev only)")

    # ── CORS ───────────────────────────────────────────────────────────── #
    cors_origins: CsvList = Field(
        default=["http://localhost:3000"],
        description="Comma-separated list of allowed CORS origins",
    )

    # ── Database ───────────────────────────────────────────────────────── #
    database_url: str = Field(
        default="sqlite+aiosqlite:///./echovault.db",
        description=(
            "Async SQLAlchemy connection string. "
            "Use sqlite+aiosqlite:// for local or postgresql+asyncpg:// for production."
        ),
    )
    db_pool_size: int = Field(default=5, ge=1, le=50, description="Connection pool size")
    db_max_overflow: int = Field(default=10, ge=0, le=100, description="Pool max overflow")
    db_echo: bool = Field(default=False, description="Log all SQL statements (debug only)")
    run_migrations_on_startup: bool = Field(
        default=True,
        description="Apply Alembic migrations when the application starts",
    )

    # ── Auth / JWT ─────────────────────────────────────────────────────── #
    jwt_secret_key: SecretStr = Field(
        ...,
        description="HS256 signing secret. Minimum 32 characters. Required.",
    )
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    jwt_access_token_expire_minutes: int = Field(
        default=60,
        ge=5,
        le=1440,
        description="Access token TTL in minutes",
    )

    # ── Encryption ─────────────────────────────────────────────────────── #
    encryption_master_key: SecretStr = Field(
        ...,
        description="Base64-encoded 32-byte master key. Per-key material is derived from it.",
    )
    encryption_active_key_id: str = Field(
        default="key-0001",
        min_length=1,
        max_length=36,
        description="Key id used for all new encryptions",
    )
    encryption_retired_key_ids: CsvList = Field(
        default=[],
        description="Key ids still valid for decryption only",
    )
    encryption_revoked_key_ids: CsvList = Field(
        default=[],
        description="Key ids that must no longer decrypt anything",
    )

    # ── Audit ──────────────────────────────────────────────────────────── #
    audit_hash_key: SecretStr = Field(
        ...,
        description="HMAC key for masked-value fingerprints in the audit trail. Min 32 chars.",
    )
    audit_append_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts to append an audit entry when a concurrent writer wins the slot",
    )

    # ── Notes ──────────────────────────────────────────────────────────── #
    access_reason_min_length: int = Field(
        default=5, ge=1, le=100, description="Minimum length of an access reason"
    )
    access_reason_max_length: int = Field(
        default=255, ge=10, le=1000, description="Maximum length of an access reason"
    )
    note_max_length: int = Field(
        default=10_000, ge=1, le=1_000_000, description="Maximum plaintext note length"
    )
    operation_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=300,
        description="Default timeout for each storage, key and audit step",
    )

    # ── Rate Limiting ──────────────────────────────────────────────────── #
    rate_limit_default: str = Field(
        default="100/minute",
        description="Default rate limit string (slowapi format)",
    )
    rate_limit_note_access: str = Field(
        default="60/minute",
        description="Rate limit for endpoints that decrypt notes",
    )

    # ── Logging ────────────────────────────────────────────────────────── #
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Minimum log level")
    log_json: bool = Field(default=True, description="Emit logs as JSON (False for dev console)")

    # ── Validators ─────────────────────────────────────────────────────── #

    @field_validator("jwt_secret_key")
    @classmethod
    def jwt_secret_must_be_strong(cls, v: SecretStr) -> SecretStr:
        if len(v.get_secret_value()) < 32:
            raise ValueError("jwt_secret_key must be at least 32 characters")
        return v

    @field_validator("audit_hash_key")
    @classmethod
    def audit_hash_key_must_be_strong(cls, v: SecretStr) -> SecretStr:
        if len(v.get_secret_value()) < 32:
            raise ValueError("audit_hash_key must be at least 32 characters")
        return v

    @field_validator("encryption_master_key")
    @classmethod
    def master_key_must_be_256_bits(cls, v: SecretStr) -> SecretStr:
        try:
            raw = base64.b64decode(v.get_secret_value(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("encryption_master_key must be valid base64") from exc
        if len(raw) != 32:
            raise ValueError("encryption_master_key must decode to 32 bytes (256 bits)")
        return v

    @model_validator(mode="after")
    def key_ids_must_not_overlap(self) -> Settings:
        retired = set(self.encryption_retired_key_ids)
        revoked = set(self.encryption_revoked_key_ids)
        if self.encryption_active_key_id in retired | revoked:
            raise ValueError("encryption_active_key_id cannot also be retired or revoked")
        if retired & revoked:
            raise ValueError(f"key ids both retired and revoked: {sorted(retired & revoked)}")
        return self

    @model_validator(mode="after")
    def reason_bounds_consistent(self) -> Settings:
        if self.access_reason_min_length > self.access_reason_max_length:
            raise ValueError("access_reason_min_length exceeds access_reason_max_length")
        return self

    @model_validator(mode="after")
    def production_safety_checks(self) -> Settings:
        if self.environment == Environment.PRODUCTION:
            if self.debug:
                raise ValueError("debug must be False in production")
            if self.reload:
                raise ValueError("reload must be False in production")
            if self.db_echo:
                raise ValueError("db_echo must be False in production")
        return self

    @property
    def master_key_bytes(self) -> bytes:
        return base64.b64decode(self.encryption_master_key.get_secret_value())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return the cached Settings singleton.

    Use dependency injection in FastAPI routes:
        settings: Settings = Depends(get_settings)
    """
    return Settings()
