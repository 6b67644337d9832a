"""Tests for app.services.audit.recorder against a real SQLite file."""
import asyncio

import pytest
import sqlalchemy as sa
from sqlalchemy import select

from app.core.errors import PersistenceError, ValidationError
from app.db.models.audit import AuditAction, AuditEntry, ImmutableEntryError, ResourceType
from app.services.audit.masking import MASK_MARKER, matches
from app.services.audit.recorder import AuditTarget, AuditTrailRecorder, RequestContext

pytestmark = pytest.mark.asyncio

NOTE = AuditTarget(ResourceType.SECURE_NOTE, "note-1")
HASH_KEY = b"test-audit-hash-key-not-for-production"


@pytest.fixture
def recorder(session_factory) -> AuditTrailRecorder:
    return AuditTrailRecorder(session_factory, hash_key=HASH_KEY, max_attempts=3)


async def _entries(session_factory, resource_id="note-1") -> list[AuditEntry]:
    async with session_factory() as db:
        result = await db.execute(
            select(AuditEntry)
            .where(AuditEntry.resource_id == resource_id)
            .order_by(AuditEntry.sequence)
        )
        return list(result.scalars().all())


# ─── Appending ────────────────────────────────────────────────────────────────

async def test_first_entry_starts_chain(recorder, session_factory):
    entry = await recorder.record(NOTE, "doctor-1", AuditAction.CREATED, reason="new consult")
    assert entry.sequence == 1
    assert entry.prev_hash is None
    assert len(entry.entry_hash) == 64
    assert len(await _entries(session_factory)) == 1


async def test_entries_link_to_previous(recorder):
    first = await recorder.record(NOTE, "doctor-1", AuditAction.CREATED, reason="new consult")
    second = await recorder.record(NOTE, "patient-1", AuditAction.ACCESSED, reason="my care")
    assert second.sequence == 2
    assert second.prev_hash == first.entry_hash


async def test_chains_are_per_resource(recorder):
    await recorder.record(NOTE, "doctor-1", AuditAction.CREATED, reason="new consult")
    other = AuditTarget(ResourceType.SECURE_NOTE, "note-2")
    entry = await recorder.record(other, "doctor-1", AuditAction.CREATED, reason="new consult")
    assert entry.sequence == 1
    assert entry.prev_hash is None


async def test_other_resource_types_share_recorder(recorder):
    payment = AuditTarget(ResourceType.PAYMENT, "note-1")
    await recorder.record(NOTE, "doctor-1", AuditAction.CREATED, reason="new consult")
    entry = await recorder.record(payment, "admin-1", AuditAction.CREATED, reason="charge issued")
    assert entry.resource_type == ResourceType.PAYMENT
    assert entry.sequence == 1


@pytest.mark.parametrize(
    "action",
    [AuditAction.CREATED, AuditAction.ACCESSED, AuditAction.UPDATED, AuditAction.ARCHIVED],
)
@pytest.mark.parametrize("reason", [None, "", "   "])
async def test_record_actions_require_reason(recorder, session_factory, action, reason):
    with pytest.raises(ValidationError):
        await recorder.record(NOTE, "doctor-1", action, reason=reason)
    assert await _entries(session_factory) == []


async def test_access_denied_action_needs_no_reason(recorder):
    admin_action = AuditTarget(ResourceType.ADMIN_ACTION, "login-7")
    entry = await recorder.record(admin_action, "user-9", AuditAction.ACCESS_DENIED)
    assert entry.access_reason is None


async def test_values_are_masked_before_persistence(recorder, session_factory):
    old = "Patient reports low mood and poor sleep."
    new = "Patient reports improved mood after therapy."
    await recorder.record(
        NOTE, "doctor-1", AuditAction.UPDATED, reason="follow-up", old_value=old, new_value=new
    )
    [stored] = await _entries(session_factory)
    assert stored.old_value_masked == "Patient " + MASK_MARKER
    assert stored.new_value_masked == "Patient " + MASK_MARKER
    assert matches(old, stored.old_value_hash, HASH_KEY)
    assert matches(new, stored.new_value_hash, HASH_KEY)
    assert "low mood" not in (stored.old_value_masked + stored.new_value_masked)


async def test_request_context_copied(recorder):
    ctx = RequestContext(ip_address="10.0.0.8", user_agent="pytest/8", correlation_id="corr-1")
    entry = await recorder.record(
        NOTE, "doctor-1", AuditAction.CREATED, reason="new consult", request=ctx
    )
    assert entry.ip_address == "10.0.0.8"
    assert entry.user_agent == "pytest/8"
    assert entry.correlation_id == "corr-1"


async def test_concurrent_appends_keep_one_chain(recorder, session_factory):
    await asyncio.gather(
        *(
            recorder.record(NOTE, f"actor-{i}", AuditAction.ACCESSED, reason="ward round")
            for i in range(10)
        )
    )
    entries = await _entries(session_factory)
    assert [e.sequence for e in entries] == list(range(1, 11))
    for prev, entry in zip(entries, entries[1:]):
        assert entry.prev_hash == prev.entry_hash
    assert (await recorder.verify_chain(ResourceType.SECURE_NOTE, "note-1")).is_valid


async def test_storage_failure_raises_persistence_error(recorder, session_factory, db_engine):
    async with db_engine.begin() as conn:
        await conn.execute(sa.text("DROP TABLE audit_entries"))
    with pytest.raises(PersistenceError):
        await recorder.record(NOTE, "doctor-1", AuditAction.CREATED, reason="new consult")


# ─── Immutability ─────────────────────────────────────────────────────────────

async def test_orm_update_forbidden(recorder, session_factory):
    await recorder.record(NOTE, "doctor-1", AuditAction.CREATED, reason="new consult")
    async with session_factory() as db:
        entry = (await db.execute(select(AuditEntry))).scalar_one()
        entry.access_reason = "rewritten"
        with pytest.raises(ImmutableEntryError):
            await db.commit()


async def test_orm_delete_forbidden(recorder, session_factory):
    await recorder.record(NOTE, "doctor-1", AuditAction.CREATED, reason="new consult")
    async with session_factory() as db:
        entry = (await db.execute(select(AuditEntry))).scalar_one()
        await db.delete(entry)
        with pytest.raises(ImmutableEntryError):
            await db.commit()


async def test_bulk_update_forbidden(recorder, session_factory):
    await recorder.record(NOTE, "doctor-1", AuditAction.CREATED, reason="new consult")
    async with session_factory() as db:
        with pytest.raises(ImmutableEntryError):
            await db.execute(sa.update(AuditEntry).values(access_reason="rewritten"))


# ─── Verification ─────────────────────────────────────────────────────────────

async def test_verify_empty_chain(recorder):
    result = await recorder.verify_chain(ResourceType.SECURE_NOTE, "nothing")
    assert result.is_valid
    assert result.total_entries == 0


async def test_verify_detects_edited_entry(recorder, session_factory):
    await recorder.record(NOTE, "doctor-1", AuditAction.CREATED, reason="new consult")
    second = await recorder.record(NOTE, "patient-1", AuditAction.ACCESSED, reason="my care")
    await recorder.record(NOTE, "patient-1", AuditAction.ACCESSED, reason="my care again")

    async with session_factory() as db:
        await db.execute(
            sa.text("UPDATE audit_entries SET actor_id = 'someone-else' WHERE id = :id"),
            {"id": second.id},
        )
        await db.commit()

    result = await recorder.verify_chain(ResourceType.SECURE_NOTE, "note-1")
    assert not result.is_valid
    assert result.first_broken_at == second.id
    assert result.total_entries == 3


async def test_verify_detects_removed_entry(recorder, session_factory):
    await recorder.record(NOTE, "doctor-1", AuditAction.CREATED, reason="new consult")
    second = await recorder.record(NOTE, "patient-1", AuditAction.ACCESSED, reason="my care")
    third = await recorder.record(NOTE, "patient-1", AuditAction.ACCESSED, reason="my care again")

    async with session_factory() as db:
        await db.execute(sa.text("DELETE FROM audit_entries WHERE id = :id"), {"id": second.id})
        await db.commit()

    result = await recorder.verify_chain(ResourceType.SECURE_NOTE, "note-1")
    assert not result.is_valid
    assert result.first_broken_at == third.id
