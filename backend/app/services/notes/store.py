"""
Secure record store: create, read, update and archive clinical notes.

Every call asks AccessPolicy first, then touches keys and storage, then
writes exactly one audit entry before returning. A record write that is not
followed by its audit entry (failure, timeout or cancellation in between)
surfaces as AuditWriteFailedError; a read whose audit entry fails returns
no plaintext.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime
from typing import NoReturn, TypeVar

import structlog

from app.config.settings import Settings
from app.core.errors import (
    AccessDeniedError,
    AuditWriteFailedError,
    ConflictError,
    ErrorCode,
    IntegrityError,
    KeyNotFoundError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from app.db.models.audit import AuditAction
from app.db.models.note import NoteType, SecureNote
from app.db.models.user import RoleEnum
from app.services.audit.recorder import AuditTrailRecorder, RequestContext
from app.services.audit.telemetry import SecurityEvent, SecurityEventKind, TelemetrySink
from app.services.crypto.encryption import EncryptedPayload, EncryptionService
from app.services.notes.context import ContextResolver
from app.services.notes.policy import AccessPolicy, Actor, DenyReason, NoteAction
from app.services.notes.repository import NoteRepository

_log = structlog.get_logger(__name__)

T = TypeVar("T")

MAX_BATCH_LIMIT = 100


@dataclass(frozen=True)
class DecryptedNote:
    """A note with its plaintext, alive only for the current request."""

    id: str
    context_id: str
    subject_id: str
    author_id: str
    note_type: NoteType
    version: int
    is_archived: bool
    key_id: str
    created_at: datetime
    updated_at: datetime
    content: str = field(repr=False)

    @classmethod
    def from_note(cls, note: SecureNote, content: str) -> DecryptedNote:
        return cls(
            id=note.id,
            context_id=note.context_id,
            subject_id=note.subject_id,
            author_id=note.author_id,
            note_type=note.note_type,
            version=note.version,
            is_archived=note.is_archived,
            key_id=note.encryption_key_id,
            created_at=note.created_at,
            updated_at=note.updated_at,
            content=content,
        )


class SecureRecordStore:
    def __init__(
        self,
        repository: NoteRepository,
        encryption: EncryptionService,
        recorder: AuditTrailRecorder,
        telemetry: TelemetrySink,
        context_resolver: ContextResolver,
        settings: Settings,
        policy: AccessPolicy | None = None,
    ) -> None:
        self._repo = repository
        self._encryption = encryption
        self._recorder = recorder
        self._telemetry = telemetry
        self._contexts = context_resolver
        self._settings = settings
        self._policy = policy or AccessPolicy()

    # ── Public operations ─────────────────────────────────────────────── #

    async def create(
        self,
        context_ref: str,
        author: Actor,
        plaintext: str,
        reason: str,
        note_type: NoteType = NoteType.CONSULTATION,
        request: RequestContext | None = None,
        timeout: float | None = None,
    ) -> str:
        """Encrypt and store a new note, then audit it as created."""
        self._check_reason(reason)
        self._check_content(plaintext)
        if not author.is_active:
            self._deny(author, DenyReason.ACTOR_INACTIVE, None, request)

        try:
            binding = await self._bounded(self._contexts.resolve(context_ref), timeout)
        except NotFoundError as exc:
            raise ValidationError(
                "context reference does not resolve",
                detail={"context_id": context_ref},
                code=ErrorCode.NOTE_CONTEXT_INVALID,
            ) from exc
        except TimeoutError as exc:
            raise PersistenceError("context lookup timed out") from exc

        if binding.author_id != author.id:
            raise ValidationError(
                "caller is not the author bound to this context",
                detail={"context_id": context_ref},
                code=ErrorCode.NOTE_CONTEXT_INVALID,
            )

        payload = self._encryption.encrypt(plaintext)
        note = SecureNote(
            context_id=binding.context_id,
            subject_id=binding.subject_id,
            author_id=author.id,
            encrypted_content=payload.ciphertext,
            content_hash=payload.content_hash,
            encryption_key_id=payload.key_id,
            note_type=note_type,
            is_archived=False,
            version=1,
        )
        try:
            await self._bounded(self._repo.insert(note), timeout)
        except TimeoutError as exc:
            raise PersistenceError("note write timed out", retryable=False) from exc

        await self._audit(
            note, author, AuditAction.CREATED, reason, request, timeout, new_value=plaintext
        )
        _log.info(
            "note_created",
            note_id=note.id,
            context_id=note.context_id,
            author_id=author.id,
            key_id=payload.key_id,
        )
        return note.id

    async def get(
        self,
        record_id: str,
        actor: Actor | None,
        reason: str,
        request: RequestContext | None = None,
        timeout: float | None = None,
    ) -> DecryptedNote:
        """Decrypt one note. Every successful call is audited separately."""
        self._check_reason(reason)
        note = await self._load(record_id, timeout)
        self._authorize(actor, note, NoteAction.GET, request)
        content = self._decrypt(note, actor, request)
        await self._audit(note, actor, AuditAction.ACCESSED, reason, request, timeout)
        return DecryptedNote.from_note(note, content)

    async def update(
        self,
        record_id: str,
        actor: Actor | None,
        new_plaintext: str,
        reason: str,
        note_type: NoteType | None = None,
        expected_version: int | None = None,
        request: RequestContext | None = None,
        timeout: float | None = None,
    ) -> int:
        """
        Replace a note's content, re-encrypting under the active key.

        Returns the new version. The swap only succeeds if the note still
        has ``expected_version`` (or the version read here when omitted).
        """
        self._check_reason(reason)
        self._check_content(new_plaintext)
        note = await self._load(record_id, timeout)
        self._authorize(actor, note, NoteAction.UPDATE, request)

        base_version = expected_version if expected_version is not None else note.version
        if base_version != note.version:
            raise self._conflict(note.id, base_version, note.version)

        old_plaintext = self._decrypt(note, actor, request)
        payload = self._encryption.encrypt(new_plaintext)
        new_type = note_type or note.note_type

        try:
            swapped = await self._bounded(
                self._repo.compare_and_swap(
                    note.id,
                    base_version,
                    encrypted_content=payload.ciphertext,
                    content_hash=payload.content_hash,
                    encryption_key_id=payload.key_id,
                    note_type=new_type,
                ),
                timeout,
            )
        except TimeoutError as exc:
            raise PersistenceError("note update timed out") from exc

        if not swapped:
            current = await self._load(record_id, timeout)
            if current.is_archived:
                self._deny(actor, DenyReason.ARCHIVED, note.id, request)
            raise self._conflict(note.id, base_version, current.version)

        await self._audit(
            note,
            actor,
            AuditAction.UPDATED,
            reason,
            request,
            timeout,
            old_value=old_plaintext,
            new_value=new_plaintext,
        )
        _log.info(
            "note_updated",
            note_id=note.id,
            actor_id=actor.id if actor else None,
            version=base_version + 1,
            key_id=payload.key_id,
            rekeyed=payload.key_id != note.encryption_key_id,
        )
        return base_version + 1

    async def archive(
        self,
        record_id: str,
        actor: Actor | None,
        reason: str,
        request: RequestContext | None = None,
        timeout: float | None = None,
    ) -> None:
        """Archive a note. Archiving an archived note is a silent no-op."""
        self._check_reason(reason)
        note = await self._load(record_id, timeout)
        self._authorize(actor, note, NoteAction.ARCHIVE, request)

        if note.is_archived:
            _log.info("note_archive_noop", note_id=note.id)
            return

        try:
            swapped = await self._bounded(
                self._repo.compare_and_swap(note.id, note.version, is_archived=True), timeout
            )
        except TimeoutError as exc:
            raise PersistenceError("note archive timed out") from exc

        if not swapped:
            current = await self._load(record_id, timeout)
            if current.is_archived:
                # A concurrent archive won and wrote the entry.
                _log.info("note_archive_noop", note_id=note.id)
                return
            raise self._conflict(note.id, note.version, current.version)

        await self._audit(note, actor, AuditAction.ARCHIVED, reason, request, timeout)
        _log.info("note_archived", note_id=note.id, actor_id=actor.id if actor else None)

    async def batch_get_by_context(
        self,
        context_ref: str,
        actor: Actor | None,
        reason: str,
        request: RequestContext | None = None,
        timeout: float | None = None,
    ) -> list[DecryptedNote]:
        """All live notes of one appointment the caller may read."""
        self._check_reason(reason)
        if actor is None or not actor.is_active:
            self._deny(actor, DenyReason.ACTOR_INACTIVE, None, request)

        try:
            binding = await self._bounded(self._contexts.resolve(context_ref), timeout)
        except TimeoutError as exc:
            raise PersistenceError("context lookup timed out") from exc
        if actor.id not in binding.participants():
            self._deny(actor, DenyReason.NOT_PARTICIPANT, None, request)

        try:
            notes = await self._bounded(self._repo.list_by_context(context_ref), timeout)
        except TimeoutError as exc:
            raise PersistenceError("note listing timed out") from exc
        return await self._read_many(notes, actor, reason, request, timeout)

    async def batch_get_by_subject(
        self,
        subject_id: str,
        actor: Actor | None,
        reason: str,
        limit: int = 20,
        offset: int = 0,
        request: RequestContext | None = None,
        timeout: float | None = None,
    ) -> list[DecryptedNote]:
        """A page of one patient's live notes the caller may read."""
        self._check_reason(reason)
        if not 1 <= limit <= MAX_BATCH_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_BATCH_LIMIT}")
        if offset < 0:
            raise ValidationError("offset must be >= 0")
        if actor is None or not actor.is_active:
            self._deny(actor, DenyReason.ACTOR_INACTIVE, None, request)
        if actor.id != subject_id and actor.role != RoleEnum.DOCTOR:
            self._deny(actor, DenyReason.NOT_PARTICIPANT, None, request)

        try:
            notes = await self._bounded(
                self._repo.list_by_subject(subject_id, limit, offset), timeout
            )
        except TimeoutError as exc:
            raise PersistenceError("note listing timed out") from exc
        return await self._read_many(notes, actor, reason, request, timeout)

    async def load_metadata(
        self, record_id: str, timeout: float | None = None
    ) -> SecureNote | None:
        """The stored row without decrypting it; used to authorize audit views."""
        try:
            return await self._bounded(self._repo.get(record_id), timeout)
        except TimeoutError as exc:
            raise PersistenceError("note read timed out") from exc

    # ── Internals ─────────────────────────────────────────────────────── #

    async def _bounded(self, awaitable: Awaitable[T], timeout: float | None) -> T:
        async with asyncio.timeout(timeout or self._settings.operation_timeout_seconds):
            return await awaitable

    def _check_reason(self, reason: str | None) -> None:
        cleaned = (reason or "").strip()
        low = self._settings.access_reason_min_length
        high = self._settings.access_reason_max_length
        if len(cleaned) < low:
            raise ValidationError(f"access reason must be at least {low} characters")
        if len(cleaned) > high:
            raise ValidationError(f"access reason must be at most {high} characters")

    def _check_content(self, plaintext: str | None) -> None:
        if not plaintext or not plaintext.strip():
            raise ValidationError("note content cannot be empty")
        if len(plaintext) > self._settings.note_max_length:
            raise ValidationError(
                f"note content exceeds {self._settings.note_max_length} characters"
            )

    async def _load(self, record_id: str, timeout: float | None) -> SecureNote:
        try:
            note = await self._bounded(self._repo.get(record_id), timeout)
        except TimeoutError as exc:
            raise PersistenceError("note read timed out") from exc
        if note is None:
            raise NotFoundError("SecureNote", record_id, code=ErrorCode.NOTE_NOT_FOUND)
        return note

    def _authorize(
        self,
        actor: Actor | None,
        note: SecureNote,
        action: NoteAction,
        request: RequestContext | None,
    ) -> None:
        decision = self._policy.evaluate(actor, note, action)
        if not decision.allowed:
            self._deny(actor, decision.reason, note.id, request)

    def _deny(
        self,
        actor: Actor | None,
        reason: DenyReason,
        record_id: str | None,
        request: RequestContext | None,
    ) -> NoReturn:
        """Emit a denial to security telemetry and raise. No audit entry is written."""
        self._telemetry.emit(
            SecurityEvent(
                kind=SecurityEventKind.ACCESS_DENIED,
                actor_id=actor.id if actor else None,
                resource_id=record_id,
                reason=reason.value,
                correlation_id=request.correlation_id if request else None,
            )
        )
        raise AccessDeniedError(reason.value, record_id=record_id)

    def _decrypt(
        self, note: SecureNote, actor: Actor | None, request: RequestContext | None
    ) -> str:
        payload = EncryptedPayload(
            ciphertext=note.encrypted_content,
            content_hash=note.content_hash,
            key_id=note.encryption_key_id,
        )
        try:
            return self._encryption.decrypt(payload)
        except IntegrityError as exc:
            self._escalate(SecurityEventKind.INTEGRITY_FAILURE, note, actor, request, exc)
            raise
        except KeyNotFoundError as exc:
            self._escalate(SecurityEventKind.KEY_NOT_FOUND, note, actor, request, exc)
            raise

    def _escalate(
        self,
        kind: SecurityEventKind,
        note: SecureNote,
        actor: Actor | None,
        request: RequestContext | None,
        exc: IntegrityError | KeyNotFoundError,
    ) -> None:
        _log.error(
            "note_decrypt_failed",
            note_id=note.id,
            key_id=note.encryption_key_id,
            kind=kind.value,
            error_code=exc.code.value,
        )
        self._telemetry.emit(
            SecurityEvent(
                kind=kind,
                actor_id=actor.id if actor else None,
                resource_id=note.id,
                reason=exc.message,
                correlation_id=request.correlation_id if request else None,
                detail={"key_id": note.encryption_key_id},
            )
        )

    async def _audit(
        self,
        note: SecureNote,
        actor: Actor | None,
        action: AuditAction,
        reason: str,
        request: RequestContext | None,
        timeout: float | None,
        old_value: str | None = None,
        new_value: str | None = None,
    ) -> None:
        actor_id = actor.id if actor else ""
        try:
            await self._bounded(
                self._recorder.record(
                    note,
                    actor_id=actor_id,
                    action=action,
                    reason=reason.strip(),
                    old_value=old_value,
                    new_value=new_value,
                    request=request,
                ),
                timeout,
            )
        except (Exception, asyncio.CancelledError) as exc:
            cause = exc.__class__.__name__
            _log.critical(
                "audit_write_failed",
                note_id=note.id,
                action=action.value,
                actor_id=actor_id,
                cause=cause,
            )
            self._telemetry.emit(
                SecurityEvent(
                    kind=SecurityEventKind.AUDIT_WRITE_FAILED,
                    actor_id=actor_id,
                    resource_id=note.id,
                    reason=action.value,
                    correlation_id=request.correlation_id if request else None,
                    detail={"cause": cause},
                )
            )
            raise AuditWriteFailedError(note.id, action.value, cause) from exc

    async def _read_many(
        self,
        notes: list[SecureNote],
        actor: Actor,
        reason: str,
        request: RequestContext | None,
        timeout: float | None,
    ) -> list[DecryptedNote]:
        """Get semantics per note; unreadable or unaudited notes are left out."""
        results: list[DecryptedNote] = []
        for note in notes:
            decision = self._policy.evaluate(actor, note, NoteAction.GET)
            if not decision.allowed:
                self._telemetry.emit(
                    SecurityEvent(
                        kind=SecurityEventKind.ACCESS_DENIED,
                        actor_id=actor.id,
                        resource_id=note.id,
                        reason=decision.reason.value if decision.reason else None,
                        correlation_id=request.correlation_id if request else None,
                    )
                )
                continue
            try:
                content = self._decrypt(note, actor, request)
            except (IntegrityError, KeyNotFoundError):
                continue
            try:
                await self._audit(note, actor, AuditAction.ACCESSED, reason, request, timeout)
            except AuditWriteFailedError as exc:
                cause = exc.__cause__
                if isinstance(cause, asyncio.CancelledError):
                    raise cause from None
                continue
            results.append(DecryptedNote.from_note(note, content))

        _log.info(
            "notes_batch_read",
            actor_id=actor.id,
            candidates=len(notes),
            returned=len(results),
        )
        return results
