"""
Shared pytest fixtures for EchoVault backend tests.

Provides:
  - a file-backed async SQLite database per test (concurrent sessions
    share it, unlike :memory:)
  - the wired service container with an in-memory telemetry sink
  - seeded people: doctor, patient, an unrelated patient, a second doctor,
    an admin and a deactivated doctor, plus one appointment
  - an httpx client bound to the ASGI app and token helpers
"""
from __future__ import annotations

import base64
from collections.abc import AsyncGenerator
from dataclasses import dataclass

import pytest
import pytest_asyncio
import sqlalchemy as sa
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config.settings import Settings
from app.core.security import create_access_token
from app.db.base import Base
from app.db.models.appointment import Appointment
from app.db.models.user import RoleEnum, User
from app.db.session import build_session_factory
from app.main import create_app
from app.services.audit.telemetry import MemoryTelemetrySink
from app.services.container import Services, build_services
from app.services.notes.policy import Actor

_MASTER_KEY = base64.b64encode(bytes(range(32))).decode()


def make_settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "_env_file": None,
        "database_url": "sqlite+aiosqlite:///:memory:",
        "jwt_secret_key": "test-secret-key-not-for-production-at-all",
        "encryption_master_key": _MASTER_KEY,
        "encryption_active_key_id": "key-0001",
        "audit_hash_key": "test-audit-hash-key-not-for-production",
        "environment": "testing",
        "run_migrations_on_startup": False,
        "cors_origins": ["http://localhost:5173"],
        "rate_limit_default": "10000/minute",
        "rate_limit_note_access": "10000/minute",
        "log_json": False,
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory():
    return make_settings


# ─── Database ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create an async SQLite engine on a fresh file per test function."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'echovault-test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


# ─── Services ─────────────────────────────────────────────────────────────────

@pytest.fixture
def telemetry() -> MemoryTelemetrySink:
    return MemoryTelemetrySink()


@pytest.fixture
def services(settings, session_factory, telemetry) -> Services:
    return build_services(settings, session_factory, telemetry=telemetry)


@pytest.fixture
def store(services):
    return services.store


@dataclass
class People:
    doctor: Actor
    patient: Actor
    stranger: Actor
    other_doctor: Actor
    admin: Actor
    inactive_doctor: Actor
    appointment_id: str


@pytest_asyncio.fixture
async def people(session_factory) -> People:
    """Seed users and one appointment binding doctor to patient."""
    rows = {
        "doctor": User(username="dr_house", role=RoleEnum.DOCTOR, is_active=True),
        "patient": User(username="pat_p", role=RoleEnum.PATIENT, is_active=True),
        "stranger": User(username="pat_u", role=RoleEnum.PATIENT, is_active=True),
        "other_doctor": User(username="dr_wilson", role=RoleEnum.DOCTOR, is_active=True),
        "admin": User(username="admin", role=RoleEnum.ADMIN, is_active=True),
        "inactive_doctor": User(username="dr_gone", role=RoleEnum.DOCTOR, is_active=False),
    }
    async with session_factory() as db:
        db.add_all(rows.values())
        await db.flush()
        appointment = Appointment(
            patient_id=rows["patient"].id,
            doctor_id=rows["doctor"].id,
            status="completed",
        )
        db.add(appointment)
        await db.commit()

    actors = {
        name: Actor(id=user.id, role=user.role, is_active=user.is_active)
        for name, user in rows.items()
    }
    return People(appointment_id=appointment.id, **actors)


@pytest.fixture
def make_appointment(session_factory):
    """Bind another patient/doctor pair; returns the appointment id."""

    async def _make(patient_id: str, doctor_id: str) -> str:
        async with session_factory() as db:
            appointment = Appointment(patient_id=patient_id, doctor_id=doctor_id)
            db.add(appointment)
            await db.commit()
            return appointment.id

    return _make


# ─── App & HTTP client ────────────────────────────────────────────────────────

@pytest.fixture
def app(settings, session_factory, telemetry):
    """FastAPI test app sharing the test database and telemetry sink."""
    return create_app(settings=settings, session_factory=session_factory, telemetry=telemetry)


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated async HTTP client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c


@pytest.fixture
def auth_headers(settings):
    """Build a Bearer header for an Actor."""

    def _headers(actor: Actor) -> dict[str, str]:
        token = create_access_token(actor.id, actor.role.value, settings=settings)
        return {"Authorization": f"Bearer {token}"}

    return _headers


# ─── Tampering ────────────────────────────────────────────────────────────────

@pytest.fixture
def corrupt_note(session_factory):
    """Flip one byte of a stored ciphertext, bypassing the store."""

    async def _corrupt(note_id: str) -> None:
        async with session_factory() as db:
            result = await db.execute(
                sa.text("SELECT encrypted_content FROM secure_notes WHERE id = :id"),
                {"id": note_id},
            )
            raw = bytearray(base64.b64decode(result.scalar_one()))
            raw[-1] ^= 0xFF
            await db.execute(
                sa.text("UPDATE secure_notes SET encrypted_content = :c WHERE id = :id"),
                {"c": base64.b64encode(bytes(raw)).decode(), "id": note_id},
            )
            await db.commit()

    return _corrupt


@pytest.fixture
def audit_count(services):
    """Number of audit entries recorded for a note."""

    async def _count(note_id: str, action=None) -> int:
        page = await services.audit_query.list(record_id=note_id, action=action)
        return page.total

    return _count
