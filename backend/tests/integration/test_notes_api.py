"""Integration tests — secure note HTTP endpoints."""
import pytest
from httpx import ASGITransport, AsyncClient

from app.main import create_app
from app.services.audit.telemetry import SecurityEventKind

pytestmark = pytest.mark.asyncio

CONTENT = "Patient reports improved mood."
REASON = {"reason": "reviewing my care plan"}


@pytest.fixture
def create_note(client, auth_headers, people):
    async def _create(content: str = CONTENT) -> str:
        resp = await client.post(
            "/api/v1/notes",
            json={
                "context_id": people.appointment_id,
                "content": content,
                "reason": "initial consultation",
            },
            headers=auth_headers(people.doctor),
        )
        assert resp.status_code == 201, resp.text
        return resp.json()["id"]

    return _create


class TestCreate:
    async def test_doctor_creates_note(self, client, auth_headers, people, audit_count, create_note):
        note_id = await create_note()
        assert await audit_count(note_id) == 1

    async def test_requires_token(self, client, people):
        resp = await client.post(
            "/api/v1/notes",
            json={"context_id": people.appointment_id, "content": CONTENT, "reason": "x"},
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "AUTH_001"

    async def test_rejects_garbage_token(self, client, people):
        resp = await client.post(
            "/api/v1/notes",
            json={"context_id": people.appointment_id, "content": CONTENT, "reason": "x"},
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert resp.status_code == 401

    async def test_unknown_appointment(self, client, auth_headers, people):
        resp = await client.post(
            "/api/v1/notes",
            json={"context_id": "no-such-appointment", "content": CONTENT, "reason": "intake"},
            headers=auth_headers(people.doctor),
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "NOTE_004"

    async def test_blank_reason_rejected(self, client, auth_headers, people):
        resp = await client.post(
            "/api/v1/notes",
            json={"context_id": people.appointment_id, "content": CONTENT, "reason": "   "},
            headers=auth_headers(people.doctor),
        )
        assert resp.status_code == 422


class TestAccess:
    async def test_patient_reads_note(self, client, auth_headers, people, create_note):
        note_id = await create_note()
        resp = await client.post(
            f"/api/v1/notes/{note_id}/access", json=REASON, headers=auth_headers(people.patient)
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["content"] == CONTENT
        assert body["version"] == 1
        assert body["subject_id"] == people.patient.id
        assert resp.headers["Cache-Control"] == "no-store"

    async def test_stranger_denied(self, client, auth_headers, people, telemetry, audit_count, create_note):
        note_id = await create_note()
        resp = await client.post(
            f"/api/v1/notes/{note_id}/access", json=REASON, headers=auth_headers(people.stranger)
        )
        assert resp.status_code == 403
        error = resp.json()["error"]
        assert error["code"] == "NOTE_002"
        assert error["detail"]["reason"] == "not_participant"
        assert "content" not in resp.text
        assert len(telemetry.of_kind(SecurityEventKind.ACCESS_DENIED)) == 1
        assert await audit_count(note_id) == 1

    async def test_inactive_actor_denied(self, client, auth_headers, people, create_note):
        note_id = await create_note()
        resp = await client.post(
            f"/api/v1/notes/{note_id}/access",
            json=REASON,
            headers=auth_headers(people.inactive_doctor),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["detail"]["reason"] == "actor_inactive"

    async def test_missing_note(self, client, auth_headers, people):
        resp = await client.post(
            "/api/v1/notes/does-not-exist/access", json=REASON, headers=auth_headers(people.doctor)
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOTE_001"

    async def test_missing_reason(self, client, auth_headers, people, create_note):
        note_id = await create_note()
        resp = await client.post(
            f"/api/v1/notes/{note_id}/access", json={}, headers=auth_headers(people.patient)
        )
        assert resp.status_code == 422

    async def test_tampered_note(self, client, auth_headers, people, corrupt_note, telemetry, create_note):
        note_id = await create_note()
        await corrupt_note(note_id)
        resp = await client.post(
            f"/api/v1/notes/{note_id}/access", json=REASON, headers=auth_headers(people.patient)
        )
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "CRY_001"
        assert CONTENT not in resp.text
        assert len(telemetry.of_kind(SecurityEventKind.INTEGRITY_FAILURE)) == 1

    async def test_request_context_is_audited(self, client, auth_headers, people, services, create_note):
        note_id = await create_note()
        resp = await client.post(
            f"/api/v1/notes/{note_id}/access",
            json=REASON,
            headers={
                **auth_headers(people.patient),
                "X-Correlation-ID": "trace-1234",
                "User-Agent": "portal/2.1",
            },
        )
        assert resp.status_code == 200
        assert resp.headers["X-Correlation-ID"] == "trace-1234"

        page = await services.audit_query.list(record_id=note_id)
        accessed = page.items[0]
        assert accessed.correlation_id == "trace-1234"
        assert accessed.user_agent == "portal/2.1"
        assert accessed.access_reason == "reviewing my care plan"


class TestUpdate:
    async def test_author_updates(self, client, auth_headers, people, create_note):
        note_id = await create_note()
        resp = await client.put(
            f"/api/v1/notes/{note_id}",
            json={"content": "Follow-up in two weeks.", "reason": "added plan", "expected_version": 1},
            headers=auth_headers(people.doctor),
        )
        assert resp.status_code == 200
        assert resp.json() == {"id": note_id, "version": 2}

    async def test_stale_version_conflicts(self, client, auth_headers, people, create_note):
        note_id = await create_note()
        resp = await client.put(
            f"/api/v1/notes/{note_id}",
            json={"content": "Follow-up.", "reason": "added plan", "expected_version": 3},
            headers=auth_headers(people.doctor),
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "NOTE_003"

    async def test_non_author_denied(self, client, auth_headers, people, create_note):
        note_id = await create_note()
        resp = await client.put(
            f"/api/v1/notes/{note_id}",
            json={"content": "Not mine.", "reason": "second opinion"},
            headers=auth_headers(people.other_doctor),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["detail"]["reason"] == "not_author"


class TestArchive:
    async def test_archive_then_update_denied(self, client, auth_headers, people, audit_count, create_note):
        note_id = await create_note()
        headers = auth_headers(people.doctor)
        for _ in range(2):
            resp = await client.post(
                f"/api/v1/notes/{note_id}/archive", json={"reason": "case closed"}, headers=headers
            )
            assert resp.status_code == 204
        assert await audit_count(note_id) == 2

        resp = await client.put(
            f"/api/v1/notes/{note_id}",
            json={"content": "Late edit.", "reason": "forgot something"},
            headers=headers,
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["detail"]["reason"] == "archived"

    async def test_patient_cannot_archive(self, client, auth_headers, people, create_note):
        note_id = await create_note()
        resp = await client.post(
            f"/api/v1/notes/{note_id}/archive",
            json={"reason": "please remove"},
            headers=auth_headers(people.patient),
        )
        assert resp.status_code == 403


class TestBatch:
    async def test_appointment_notes(self, client, auth_headers, people, create_note):
        await create_note("First.")
        await create_note("Second.")
        resp = await client.post(
            f"/api/v1/appointments/{people.appointment_id}/notes/access",
            json=REASON,
            headers=auth_headers(people.patient),
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["count"] == 2
        assert {n["content"] for n in body["items"]} == {"First.", "Second."}

    async def test_patient_notes_paged(self, client, auth_headers, people, create_note):
        for i in range(3):
            await create_note(f"Note {i}.")
        resp = await client.post(
            f"/api/v1/patients/{people.patient.id}/notes/access",
            params={"limit": 2},
            json=REASON,
            headers=auth_headers(people.patient),
        )
        assert resp.status_code == 200
        assert resp.json()["count"] == 2

    async def test_stranger_cannot_list_patient(self, client, auth_headers, people, create_note):
        await create_note()
        resp = await client.post(
            f"/api/v1/patients/{people.patient.id}/notes/access",
            json=REASON,
            headers=auth_headers(people.stranger),
        )
        assert resp.status_code == 403


class TestOperational:
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["database"] == "ok"

    async def test_metrics(self, client):
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert "echovault_security_events_total" in resp.text

    async def test_bad_correlation_id_replaced(self, client):
        resp = await client.get("/health", headers={"X-Correlation-ID": "bad id; drop table"})
        assert resp.headers["X-Correlation-ID"] != "bad id; drop table"
        assert len(resp.headers["X-Correlation-ID"]) == 36


class TestRateLimits:
    @pytest.fixture
    def strict_app(self, settings_factory, session_factory, telemetry, monkeypatch):
        for name in ("JWT_SECRET_KEY", "ENCRYPTION_MASTER_KEY", "AUDIT_HASH_KEY"):
            monkeypatch.delenv(name, raising=False)
        settings = settings_factory(rate_limit_note_access="2/minute")
        return create_app(settings=settings, session_factory=session_factory, telemetry=telemetry)

    async def test_limits_follow_injected_settings(self, strict_app, store, people, auth_headers):
        note_id = await store.create(
            people.appointment_id, people.doctor, CONTENT, "initial consultation"
        )
        async with AsyncClient(transport=ASGITransport(app=strict_app), base_url="http://test") as c:
            assert (await c.get("/health")).status_code == 200

            url = f"/api/v1/notes/{note_id}/access"
            headers = auth_headers(people.patient)
            for _ in range(2):
                assert (await c.post(url, json=REASON, headers=headers)).status_code == 200

            resp = await c.post(url, json=REASON, headers=headers)
            assert resp.status_code == 429
            assert resp.json()["error"]["code"] == "GEN_004"

    async def test_other_routes_keep_default_limit(self, strict_app, store, people, auth_headers):
        note_id = await store.create(
            people.appointment_id, people.doctor, CONTENT, "initial consultation"
        )
        async with AsyncClient(transport=ASGITransport(app=strict_app), base_url="http://test") as c:
            for i in range(4):
                resp = await c.put(
                    f"/api/v1/notes/{note_id}",
                    json={"content": f"Revision {i}.", "reason": "routine revision"},
                    headers=auth_headers(people.doctor),
                )
                assert resp.status_code == 200
