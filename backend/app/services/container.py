"""Wires the note store and its collaborators from settings."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.settings import Settings
from app.services.audit.query import AuditQueryService
from app.services.audit.recorder import AuditTrailRecorder
from app.services.audit.telemetry import LogTelemetrySink, TelemetrySink
from app.services.crypto.encryption import EncryptionService
from app.services.crypto.keyring import KeyRing
from app.services.crypto.rotation import KeyRotationService
from app.services.identity import IdentityProvider, TokenIdentityProvider
from app.services.notes.context import AppointmentContextResolver, ContextResolver
from app.services.notes.policy import AccessPolicy
from app.services.notes.repository import NoteRepository
from app.services.notes.store import SecureRecordStore


@dataclass
class Services:
    settings: Settings
    keyring: KeyRing
    encryption: EncryptionService
    recorder: AuditTrailRecorder
    telemetry: TelemetrySink
    policy: AccessPolicy
    store: SecureRecordStore
    audit_query: AuditQueryService
    key_rotation: KeyRotationService
    identity: IdentityProvider


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    telemetry: TelemetrySink | None = None,
    context_resolver: ContextResolver | None = None,
) -> Services:
    keyring = KeyRing.from_settings(settings)
    encryption = EncryptionService(keyring)
    recorder = AuditTrailRecorder(
        session_factory,
        hash_key=settings.audit_hash_key.get_secret_value().encode("utf-8"),
        max_attempts=settings.audit_append_retries,
    )
    sink = telemetry or LogTelemetrySink()
    policy = AccessPolicy()
    store = SecureRecordStore(
        repository=NoteRepository(session_factory),
        encryption=encryption,
        recorder=recorder,
        telemetry=sink,
        context_resolver=context_resolver or AppointmentContextResolver(session_factory),
        settings=settings,
        policy=policy,
    )
    return Services(
        settings=settings,
        keyring=keyring,
        encryption=encryption,
        recorder=recorder,
        telemetry=sink,
        policy=policy,
        store=store,
        audit_query=AuditQueryService(session_factory),
        key_rotation=KeyRotationService(keyring, session_factory),
        identity=TokenIdentityProvider(session_factory, settings),
    )
