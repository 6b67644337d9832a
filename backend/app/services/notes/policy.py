"""
Access policy for secure notes.

A pure decision function: no I/O, no logging, no side effects. Callers turn
a deny into telemetry and an AccessDeniedError.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from app.db.models.user import RoleEnum


@dataclass(frozen=True)
class Actor:
    """The authenticated caller as the identity service reports it."""

    id: str
    role: RoleEnum
    is_active: bool = True


class NoteAction(StrEnum):
    GET = "get"
    UPDATE = "update"
    ARCHIVE = "archive"
    VIEW_AUDIT = "view_audit"


class DenyReason(StrEnum):
    ACTOR_INACTIVE = "actor_inactive"
    NOT_AUTHOR = "not_author"
    NOT_PARTICIPANT = "not_participant"
    ARCHIVED = "archived"


class PolicyTarget(Protocol):
    subject_id: str
    author_id: str
    is_archived: bool


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: DenyReason | None = None

    @classmethod
    def allow(cls) -> Decision:
        return cls(True)

    @classmethod
    def deny(cls, reason: DenyReason) -> Decision:
        return cls(False, reason)


class AccessPolicy:
    """
    Rules are checked in order and the first match wins:

    1. missing or inactive actor                        -> actor_inactive
    2. update/archive by anyone but the author          -> not_author
    3. get by anyone but the subject or the author      -> not_participant
    4. view_audit by a non-participant who is not admin -> not_participant
    5. update of an archived note                       -> archived
    """

    def evaluate(
        self, actor: Actor | None, record: PolicyTarget, action: NoteAction
    ) -> Decision:
        if actor is None or not actor.is_active:
            return Decision.deny(DenyReason.ACTOR_INACTIVE)

        participant = actor.id in (record.subject_id, record.author_id)

        if action in (NoteAction.UPDATE, NoteAction.ARCHIVE) and actor.id != record.author_id:
            return Decision.deny(DenyReason.NOT_AUTHOR)
        if action == NoteAction.GET and not participant:
            return Decision.deny(DenyReason.NOT_PARTICIPANT)
        if action == NoteAction.VIEW_AUDIT and not (participant or actor.role == RoleEnum.ADMIN):
            return Decision.deny(DenyReason.NOT_PARTICIPANT)
        if record.is_archived and action == NoteAction.UPDATE:
            return Decision.deny(DenyReason.ARCHIVED)
        return Decision.allow()
