import pytest

from finsync.entities import Remote
from finsync.reconciler import (
    Direction, IdentityConflictError, IdentityReconciler, IdFormat, is_valid_id,
)

VALID_V4 = "550e8400-e29b-41d4-a716-446655440000"


@pytest.fixture
def reconciler(db):
    return IdentityReconciler(db)


# --- Id validation ---

@pytest.mark.parametrize("candidate", [
    "12345",
    "",
    "not-a-uuid",
    "6ba7b810-9dad-11d1-80b4-00c04fd430c8",    # v1
    "550e8400-e29b-41d4-c716-446655440000",    # bad variant nibble
    VALID_V4 + "0",
    " " + VALID_V4,
    None,
    12345,
])
def test_invalid_uuid_resolves_to_none(reconciler, candidate):
    assert reconciler.resolve_remote_id({"supabaseId": candidate}, Remote.SUPABASE) is None


def test_valid_uuid_resolves_to_itself(reconciler):
    assert reconciler.resolve_remote_id({"supabaseId": VALID_V4}, Remote.SUPABASE) == VALID_V4
    assert is_valid_id(VALID_V4.upper(), IdFormat.UUID4)


def test_opaque_ids():
    assert is_valid_id("65a1f0c2e4b0a1b2c3d4e5f6", IdFormat.OPAQUE)
    assert not is_valid_id("", IdFormat.OPAQUE)
    assert not is_valid_id(" padded ", IdFormat.OPAQUE)
    assert not is_valid_id(7, IdFormat.OPAQUE)


def test_resolve_handles_missing_record(reconciler):
    assert reconciler.resolve_remote_id(None, Remote.API) is None
    assert reconciler.resolve_remote_id({}, Remote.API) is None


# --- Recording ids ---

def test_record_remote_id_is_idempotent(db, reconciler):
    local_id = db.insert("clients", {"name": "Acme"})
    assert reconciler.record_remote_id("clients", local_id, Remote.SUPABASE, VALID_V4)
    assert reconciler.record_remote_id("clients", local_id, Remote.SUPABASE, VALID_V4)
    assert db.get("clients", local_id)["supabaseId"] == VALID_V4


def test_remote_id_never_moves_to_another_record(db, reconciler):
    a = db.insert("clients", {"name": "A"})
    b = db.insert("clients", {"name": "B"})
    reconciler.record_remote_id("clients", a, Remote.API, "r1")
    with pytest.raises(IdentityConflictError):
        reconciler.record_remote_id("clients", b, Remote.API, "r1")
    assert db.get("clients", b)["remoteId"] is None


def test_valid_id_is_not_overwritten(db, reconciler):
    local_id = db.insert("clients", {"name": "A"})
    reconciler.record_remote_id("clients", local_id, Remote.API, "r1")
    with pytest.raises(IdentityConflictError):
        reconciler.record_remote_id("clients", local_id, Remote.API, "r2")


def test_invalid_stored_id_is_replaced(db, reconciler):
    local_id = db.insert("clients", {"name": "A", "supabaseId": "legacy-mongo-id"})
    reconciler.record_remote_id("clients", local_id, Remote.SUPABASE, VALID_V4)
    assert db.get("clients", local_id)["supabaseId"] == VALID_V4


def test_record_rejects_malformed_id(db, reconciler):
    local_id = db.insert("clients", {"name": "A"})
    with pytest.raises(ValueError):
        reconciler.record_remote_id("clients", local_id, Remote.SUPABASE, "12345")


def test_record_for_deleted_record_returns_false(reconciler):
    assert reconciler.record_remote_id("clients", 404, Remote.API, "r1") is False


def test_forget_remote_id(db, reconciler):
    local_id = db.insert("clients", {"name": "A", "remoteId": "r1"})
    reconciler.forget_remote_id("clients", local_id, Remote.API)
    assert db.get("clients", local_id)["remoteId"] is None


# --- Foreign keys ---

def test_push_translates_known_references(db, reconciler):
    client_id = db.insert("clients", {"name": "Acme", "remoteId": "r-client"})
    income = {"id": 1, "amount": 10, "clientId": client_id}

    out, dropped = reconciler.translate_foreign_keys("income", income, Direction.PUSH, Remote.API)

    assert out["clientId"] == "r-client"
    assert dropped == []
    assert income["clientId"] == client_id


def test_push_drops_unsynced_references(db, reconciler):
    client_id = db.insert("clients", {"name": "Acme"})
    out, dropped = reconciler.translate_foreign_keys(
        "income", {"amount": 10, "clientId": client_id}, Direction.PUSH, Remote.API)
    assert "clientId" not in out
    assert dropped == ["clientId"]


def test_push_ignores_empty_references(reconciler):
    out, dropped = reconciler.translate_foreign_keys(
        "income", {"amount": 10, "clientId": None}, Direction.PUSH, Remote.API)
    assert dropped == []
    assert out["clientId"] is None


def test_pull_maps_to_local_ids(db, reconciler):
    client_id = db.insert("clients", {"name": "Acme", "remoteId": "r-client"})
    out, dropped = reconciler.translate_foreign_keys(
        "income", {"clientId": "r-client"}, Direction.PULL, Remote.API)
    assert out["clientId"] == client_id
    assert dropped == []


def test_pull_creates_shadow_for_unknown_reference(db, reconciler):
    out, _ = reconciler.translate_foreign_keys(
        "todos", {"title": "Pay rent", "listId": {"_id": "r-list", "name": "Home"}},
        Direction.PULL, Remote.API)

    shadow = db.get("lists", out["listId"])
    assert shadow["_shadow"] is True
    assert shadow["remoteId"] == "r-list"

    again, _ = reconciler.translate_foreign_keys(
        "todos", {"listId": "r-list"}, Direction.PULL, Remote.API)
    assert again["listId"] == out["listId"]
    assert db.count("lists") == 1


def test_local_id_for_without_shadow(reconciler):
    assert reconciler.local_id_for("clients", Remote.API, "r-missing", create_shadow=False) is None
