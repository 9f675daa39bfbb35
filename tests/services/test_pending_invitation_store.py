"""
Tests for PendingInvitationStore.

Covers the single-slot lifecycle, TTL expiry and recovery from corrupted
slot contents.
"""
import json

import pytest

from plato.models.client_state_slot import ClientStateSlot
from plato.services.pending_invitation_store import (
    DEFAULT_TTL_MS,
    PendingInvitationRecord,
    PendingInvitationStore,
)


class FakeClock:
    def __init__(self, now=1_700_000_000_000):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(db, clock):
    return PendingInvitationStore(db, ttl_ms=DEFAULT_TTL_MS, clock=clock)


def _write_raw(db, value, key="pendingInvitation"):
    db.add(ClientStateSlot(key=key, value=value))
    db.commit()


def test_get_on_empty_slot_returns_none(store):
    assert store.get() is None


def test_stash_then_get_returns_same_record(store, clock):
    record = store.stash("abc123", "org1", "recruiter")

    assert record == PendingInvitationRecord("abc123", "org1", "recruiter", clock.now)
    assert store.get() == record


def test_persisted_layout(db, store, clock):
    store.stash("abc123", "org1", "recruiter")

    row = db.get(ClientStateSlot, "pendingInvitation")
    assert json.loads(row.value) == {
        "token": "abc123",
        "organizationId": "org1",
        "role": "recruiter",
        "timestamp": clock.now,
    }


def test_put_overwrites_previous_record(store, clock):
    store.stash("first", "org1", "recruiter")
    clock.now += 1000
    second = store.stash("second", "org2", "admin")

    assert store.get() == second


def test_record_at_ttl_boundary_is_kept(store, clock):
    record = store.stash("abc123", "org1", "recruiter")
    clock.now += DEFAULT_TTL_MS

    assert store.get() == record


def test_expired_record_is_purged(db, store, clock):
    store.stash("abc123", "org1", "recruiter")
    clock.now += DEFAULT_TTL_MS + 1

    assert store.get() is None
    assert db.get(ClientStateSlot, "pendingInvitation") is None


@pytest.mark.parametrize("raw", [
    "{not json",
    "[]",
    json.dumps({"organizationId": "org1", "timestamp": 1}),
    json.dumps({"token": "abc123", "timestamp": "yesterday"}),
    json.dumps({"token": "abc123", "timestamp": True}),
    json.dumps({"token": "", "timestamp": 1}),
])
def test_corrupted_slot_is_cleared(db, store, raw):
    _write_raw(db, raw)

    assert store.get() is None
    assert db.get(ClientStateSlot, "pendingInvitation") is None


def test_clear_empties_slot_and_is_idempotent(store):
    store.stash("abc123", "org1", "recruiter")

    store.clear()
    store.clear()

    assert store.get() is None


def test_slots_are_independent(db, clock):
    first = PendingInvitationStore(db, slot="pendingInvitation:a", clock=clock)
    second = PendingInvitationStore(db, slot="pendingInvitation:b", clock=clock)

    first.stash("token-a", "org1", "recruiter")

    assert second.get() is None
    second.clear()
    assert first.get().token == "token-a"


def test_ttl_defaults_from_environment(db, monkeypatch):
    monkeypatch.setenv("PENDING_INVITATION_TTL_SECONDS", "60")

    store = PendingInvitationStore(db)

    assert store.ttl_ms == 60_000


def test_stash_purges_abandoned_slots_of_other_clients(db, clock):
    abandoned = PendingInvitationStore(db, slot="pendingInvitation:gone", clock=clock)
    recent = PendingInvitationStore(db, slot="pendingInvitation:recent", clock=clock)
    abandoned.stash("old-token", "org1", "recruiter")
    db.add(ClientStateSlot(key="onboardingStep:gone", value="{}"))
    db.commit()

    clock.now += DEFAULT_TTL_MS // 2
    recent.stash("recent-token", "org1", "recruiter")
    clock.now += DEFAULT_TTL_MS // 2 + 1

    PendingInvitationStore(db, slot="pendingInvitation:new", clock=clock).stash("abc123", "org1", "admin")

    assert db.get(ClientStateSlot, "pendingInvitation:gone") is None
    assert db.get(ClientStateSlot, "pendingInvitation:recent") is not None
    assert db.get(ClientStateSlot, "pendingInvitation:new") is not None
    assert db.get(ClientStateSlot, "onboardingStep:gone") is not None


def test_purge_expired_reports_count(db, clock):
    for client_id in ("a", "b"):
        PendingInvitationStore(db, slot=f"pendingInvitation:{client_id}", clock=clock).stash(
            "abc123", "org1", "recruiter"
        )
    clock.now += DEFAULT_TTL_MS + 1

    store = PendingInvitationStore(db, slot="pendingInvitation:c", clock=clock)

    assert store.purge_expired() == 2
    assert store.purge_expired() == 0
