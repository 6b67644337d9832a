"""Unit tests for app.services.crypto.keyring."""
import pytest

from app.core.errors import KeyNotFoundError, ValidationError
from app.services.crypto.keyring import KeyRing, KeyStatus, derive_key

MASTER = bytes(range(32))


def test_derive_key_is_deterministic_and_per_id():
    assert derive_key(MASTER, "key-0001") == derive_key(MASTER, "key-0001")
    assert derive_key(MASTER, "key-0001") != derive_key(MASTER, "key-0002")
    assert len(derive_key(MASTER, "key-0001")) == 32


def test_master_key_must_be_32_bytes():
    with pytest.raises(ValidationError):
        KeyRing(b"too short", active_key_id="key-0001")


def test_active_key_returns_id_and_material():
    ring = KeyRing(MASTER, active_key_id="key-0001")
    key_id, material = ring.active_key()
    assert key_id == "key-0001"
    assert material == derive_key(MASTER, "key-0001")


def test_statuses_from_constructor():
    ring = KeyRing(
        MASTER,
        active_key_id="key-0003",
        retired_key_ids=["key-0002"],
        revoked_key_ids=["key-0001"],
    )
    assert ring.status_of("key-0003") == KeyStatus.ACTIVE
    assert ring.status_of("key-0002") == KeyStatus.RETIRED
    assert ring.status_of("key-0001") == KeyStatus.REVOKED
    assert ring.status_of("missing") is None
    assert ring.key_ids(KeyStatus.RETIRED) == ["key-0002"]


def test_resolve_active_and_retired():
    ring = KeyRing(MASTER, active_key_id="key-0002", retired_key_ids=["key-0001"])
    assert ring.resolve("key-0001") == derive_key(MASTER, "key-0001")
    assert ring.resolve("key-0002") == derive_key(MASTER, "key-0002")


def test_resolve_unknown_raises():
    ring = KeyRing(MASTER, active_key_id="key-0001")
    with pytest.raises(KeyNotFoundError):
        ring.resolve("key-9999")


def test_resolve_revoked_raises_with_flag():
    ring = KeyRing(MASTER, active_key_id="key-0002", revoked_key_ids=["key-0001"])
    with pytest.raises(KeyNotFoundError) as exc_info:
        ring.resolve("key-0001")
    assert exc_info.value.revoked is True


def test_rotate_retires_previous_active():
    ring = KeyRing(MASTER, active_key_id="key-0001")
    new_id = ring.rotate("key-0002")
    assert new_id == "key-0002"
    assert ring.active_key_id == "key-0002"
    assert ring.status_of("key-0001") == KeyStatus.RETIRED
    assert ring.active_key()[0] == "key-0002"


def test_rotate_generates_id_when_omitted():
    ring = KeyRing(MASTER, active_key_id="key-0001")
    new_id = ring.rotate()
    assert new_id != "key-0001"
    assert ring.status_of(new_id) == KeyStatus.ACTIVE


def test_rotate_to_existing_id_rejected():
    ring = KeyRing(MASTER, active_key_id="key-0002", retired_key_ids=["key-0001"])
    with pytest.raises(ValidationError):
        ring.rotate("key-0001")
    assert ring.active_key_id == "key-0002"


def test_revoke_active_rejected():
    ring = KeyRing(MASTER, active_key_id="key-0001")
    with pytest.raises(ValidationError):
        ring.revoke("key-0001")


def test_revoke_retired():
    ring = KeyRing(MASTER, active_key_id="key-0002", retired_key_ids=["key-0001"])
    ring.revoke("key-0001")
    assert ring.status_of("key-0001") == KeyStatus.REVOKED


def test_entries_never_expose_material():
    ring = KeyRing(MASTER, active_key_id="key-0001")
    entry = ring.entries()[0]
    assert "material" not in entry.to_dict()
    assert repr(derive_key(MASTER, "key-0001")) not in repr(entry)


def test_from_settings(settings_factory):
    cfg = settings_factory(
        encryption_active_key_id="key-0003",
        encryption_retired_key_ids="key-0001, key-0002",
    )
    ring = KeyRing.from_settings(cfg)
    assert ring.active_key_id == "key-0003"
    assert sorted(ring.key_ids(KeyStatus.RETIRED)) == ["key-0001", "key-0002"]
