"""
Audit trail recorder: the only writer of ``audit_entries``.

Every entry is SHA-256 hashed together with the hash of the previous entry
of the same resource. This forms one hash chain per resource, so tampering
with any historical entry is detectable while unrelated resources never
contend for the same chain head.

Appends to a chain are serialised in-process by a per-resource asyncio lock;
across processes the unique (resource_type, resource_id, sequence) constraint
makes the loser of a race retry against the new chain head.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import weakref
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

import structlog
from sqlalchemy import exc as sa_exc
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import PersistenceError, ValidationError
from app.db.models.audit import REASON_REQUIRED, AuditAction, AuditEntry, ResourceType
from app.services.audit.masking import MaskedValue, mask_content

_log = structlog.get_logger(__name__)


class Auditable(Protocol):
    """Anything that can own an audit chain."""

    @property
    def audit_resource_type(self) -> ResourceType: ...

    @property
    def audit_resource_id(self) -> str: ...


@dataclass(frozen=True)
class AuditTarget:
    """Plain Auditable for resources without an ORM object at hand."""

    audit_resource_type: ResourceType
    audit_resource_id: str


@dataclass(frozen=True)
class RequestContext:
    """Where a request came from; copied onto each audit entry."""

    ip_address: str | None = None
    user_agent: str | None = None
    correlation_id: str | None = None


@dataclass(frozen=True)
class ChainVerification:
    is_valid: bool
    total_entries: int
    first_broken_at: str | None = None


def _normalise_ts(value: datetime) -> str:
    # SQLite hands back naive datetimes; everything is written in UTC.
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")


def compute_entry_hash(entry: AuditEntry) -> str:
    """SHA-256 over every field of ``entry`` except ``entry_hash``."""
    components = {
        "resource_type": str(entry.resource_type),
        "resource_id": entry.resource_id,
        "sequence": entry.sequence,
        "actor_id": entry.actor_id,
        "action": str(entry.action),
        "access_reason": entry.access_reason or "",
        "old_value_masked": entry.old_value_masked or "",
        "old_value_hash": entry.old_value_hash or "",
        "new_value_masked": entry.new_value_masked or "",
        "new_value_hash": entry.new_value_hash or "",
        "ip_address": entry.ip_address or "",
        "user_agent": entry.user_agent or "",
        "correlation_id": entry.correlation_id or "",
        "created_at": _normalise_ts(entry.created_at),
        "prev_hash": entry.prev_hash or "",
    }
    canonical = json.dumps(components, sort_keys=True, ensure_ascii=True)
    return hashlib.sha256(canonical.encode()).hexdigest()


class AuditTrailRecorder:
    """
    Appends immutable audit entries for any Auditable resource.

    Usage:
        recorder = AuditTrailRecorder(session_factory, hash_key)
        await recorder.record(
            note,
            actor_id=actor.id,
            action=AuditAction.UPDATED,
            reason="added follow-up plan",
            old_value=old_plaintext,
            new_value=new_plaintext,
        )

    Values passed as ``old_value``/``new_value`` are masked here; nothing
    unmasked is ever written.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        hash_key: bytes,
        max_attempts: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._hash_key = hash_key
        self._max_attempts = max_attempts
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, resource_type: ResourceType, resource_id: str) -> asyncio.Lock:
        key = (resource_type.value, resource_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _mask(self, value: str | None) -> MaskedValue | None:
        return mask_content(value, self._hash_key) if value is not None else None

    async def record(
        self,
        resource: Auditable,
        actor_id: str,
        action: AuditAction,
        reason: str | None = None,
        old_value: str | None = None,
        new_value: str | None = None,
        request: RequestContext | None = None,
    ) -> AuditEntry:
        """
        Append one entry to the resource's chain.

        Raises:
            ValidationError: a record action without a reason.
            PersistenceError: the entry could not be written.
        """
        if action in REASON_REQUIRED and not (reason and reason.strip()):
            raise ValidationError(f"access reason required for {action.value}")

        resource_type = resource.audit_resource_type
        resource_id = resource.audit_resource_id
        ctx = request or RequestContext()
        old_masked = self._mask(old_value)
        new_masked = self._mask(new_value)

        lock = self._lock_for(resource_type, resource_id)
        async with lock:
            for attempt in range(1, self._max_attempts + 1):
                try:
                    async with self._session_factory() as db:
                        head = await self._chain_head(db, resource_type, resource_id)
                        entry = AuditEntry(
                            resource_type=resource_type,
                            resource_id=resource_id,
                            sequence=head[0] + 1 if head else 1,
                            actor_id=actor_id,
                            action=action,
                            access_reason=reason,
                            old_value_masked=old_masked.masked if old_masked else None,
                            old_value_hash=old_masked.fingerprint if old_masked else None,
                            new_value_masked=new_masked.masked if new_masked else None,
                            new_value_hash=new_masked.fingerprint if new_masked else None,
                            ip_address=ctx.ip_address,
                            user_agent=ctx.user_agent[:500] if ctx.user_agent else None,
                            correlation_id=ctx.correlation_id,
                            prev_hash=head[1] if head else None,
                            created_at=datetime.now(UTC),
                        )
                        entry.entry_hash = compute_entry_hash(entry)
                        db.add(entry)
                        await db.commit()
                except sa_exc.IntegrityError:
                    _log.warning(
                        "audit_chain_contended",
                        resource_type=resource_type.value,
                        resource_id=resource_id,
                        attempt=attempt,
                    )
                    continue
                except sa_exc.SQLAlchemyError as exc:
                    raise PersistenceError(f"audit append failed: {exc.__class__.__name__}") from exc

                _log.debug(
                    "audit_entry_written",
                    resource_type=resource_type.value,
                    resource_id=resource_id,
                    action=action.value,
                    actor_id=actor_id,
                    sequence=entry.sequence,
                    entry_hash=entry.entry_hash[:12],
                )
                return entry

        raise PersistenceError(
            f"audit append lost the chain head {self._max_attempts} times for {resource_id}"
        )

    @staticmethod
    async def _chain_head(
        db: AsyncSession, resource_type: ResourceType, resource_id: str
    ) -> tuple[int, str] | None:
        """(sequence, entry_hash) of the newest entry of a resource."""
        result = await db.execute(
            select(AuditEntry.sequence, AuditEntry.entry_hash)
            .where(
                AuditEntry.resource_type == resource_type,
                AuditEntry.resource_id == resource_id,
            )
            .order_by(AuditEntry.sequence.desc())
            .limit(1)
        )
        row = result.first()
        return (row[0], row[1]) if row else None

    async def verify_chain(
        self, resource_type: ResourceType, resource_id: str
    ) -> ChainVerification:
        """
        Recompute the chain of one resource.

        Reports the id of the first entry whose hash, link or sequence
        number does not match.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                select(AuditEntry)
                .where(
                    AuditEntry.resource_type == resource_type,
                    AuditEntry.resource_id == resource_id,
                )
                .order_by(AuditEntry.sequence.asc())
            )
            entries: list[AuditEntry] = list(result.scalars().all())

        prev_hash: str | None = None
        for expected_seq, entry in enumerate(entries, start=1):
            recomputed = compute_entry_hash(entry)
            if (
                entry.sequence != expected_seq
                or entry.prev_hash != prev_hash
                or recomputed != entry.entry_hash
            ):
                _log.error(
                    "audit_chain_broken",
                    resource_type=resource_type.value,
                    resource_id=resource_id,
                    entry_id=entry.id,
                    sequence=entry.sequence,
                )
                return ChainVerification(False, len(entries), entry.id)
            prev_hash = entry.entry_hash

        return ChainVerification(True, len(entries))
