"""Tests for registry/store.py: SQLite ledger store and row mapping."""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import pytest
from protocol import PromiseStatus, UpstreamError
from registry.models import Promise, User
from registry.reputation import compute_delta, apply_delta
from registry.store import LedgerStore
from conftest import NOW, HOUR


def _promise(pid="promise_1", owner="0xaaa", created_at=NOW, **kwargs):
    fields = dict(
        id=pid, owner=owner, message="Run 5k", category="Health", difficulty="easy",
        deadline=created_at + HOUR, created_at=created_at, updated_at=created_at,
    )
    fields.update(kwargs)
    return Promise(**fields)


def _complete(counters: User) -> User:
    return apply_delta(counters, compute_delta(PromiseStatus.ACTIVE, PromiseStatus.COMPLETED, counters))


def test_insert_creates_owner_and_counts(store):
    promise, user = store.insert_promise(_promise())
    assert promise.status == PromiseStatus.ACTIVE
    assert user.address == "0xaaa"
    assert user.total_promises == 1
    assert user.joined_at == NOW


def test_get_promise_roundtrip(store):
    store.insert_promise(_promise(proof="https://example.com/p"))
    got = store.get_promise("promise_1")
    assert got == _promise(proof="https://example.com/p")


def test_get_missing_promise(store):
    assert store.get_promise("nope") is None
    assert store.get_user("0xnobody") is None


def test_list_newest_first_and_filters(store):
    store.insert_promise(_promise("p1", created_at=NOW))
    store.insert_promise(_promise("p2", created_at=NOW + 10, category="Learning"))
    store.insert_promise(_promise("p3", owner="0xbbb", created_at=NOW + 20))
    assert [p.id for p in store.list_promises()] == ["p3", "p2", "p1"]
    assert [p.id for p in store.list_promises(owner="0xaaa")] == ["p2", "p1"]
    assert [p.id for p in store.list_promises(category="Learning")] == ["p2"]
    assert [p.id for p in store.list_promises(limit=1)] == ["p3"]


def test_resolve_applies_counters_once(store):
    store.insert_promise(_promise())
    result = store.resolve_promise("promise_1", PromiseStatus.COMPLETED, "https://x", NOW + 5, _complete)
    promise, user = result
    assert promise.status == PromiseStatus.COMPLETED
    assert promise.proof == "https://x"
    assert promise.resolved_at == NOW + 5
    assert user.reputation == 10
    assert user.completed_promises == 1
    assert user.streak == 1

    # Compare-and-set: second resolution finds nothing active
    again = store.resolve_promise("promise_1", PromiseStatus.FAILED, None, NOW + 6, _complete)
    assert again is None
    assert store.get_user("0xaaa").reputation == 10
    assert store.get_promise("promise_1").status == PromiseStatus.COMPLETED


def test_resolve_keeps_existing_proof_when_none_given(store):
    store.insert_promise(_promise(proof="https://first"))
    promise, _ = store.resolve_promise("promise_1", PromiseStatus.COMPLETED, None, NOW, _complete)
    assert promise.proof == "https://first"


def test_resolve_rolls_back_when_apply_raises(store):
    store.insert_promise(_promise())

    def boom(counters):
        raise RuntimeError("rule failed")

    with pytest.raises(RuntimeError):
        store.resolve_promise("promise_1", PromiseStatus.COMPLETED, None, NOW, boom)
    assert store.get_promise("promise_1").status == PromiseStatus.ACTIVE
    assert store.get_user("0xaaa").reputation == 0


def test_update_active_fields(store):
    store.insert_promise(_promise())
    updated = store.update_active_fields("promise_1", {"message": "Run 10k"}, NOW + 1)
    assert updated.message == "Run 10k"
    assert updated.updated_at == NOW + 1


def test_update_rejects_resolved_and_unknown_columns(store):
    store.insert_promise(_promise())
    store.resolve_promise("promise_1", PromiseStatus.COMPLETED, None, NOW, _complete)
    assert store.update_active_fields("promise_1", {"message": "late edit"}, NOW) is None
    with pytest.raises(ValueError):
        store.update_active_fields("promise_1", {"status": "active"}, NOW)


def test_set_admin_progress(store):
    store.insert_promise(_promise())
    assert store.set_admin_progress("promise_1", 40, NOW).admin_adjusted_progress == 40
    assert store.set_admin_progress("missing", 40, NOW) is None


def test_delete_decrements_total_with_floor(store):
    store.insert_promise(_promise())
    promise, user = store.delete_promise("promise_1", NOW)
    assert promise.id == "promise_1"
    assert user.total_promises == 0
    assert store.get_promise("promise_1") is None
    assert store.delete_promise("promise_1", NOW) is None


def test_delete_resolved_promise_rebuilds_counters(store):
    store.insert_promise(_promise("p1"))
    store.insert_promise(_promise("p2"))
    store.resolve_promise("p1", PromiseStatus.COMPLETED, None, NOW + 1, _complete)
    store.resolve_promise("p2", PromiseStatus.COMPLETED, None, NOW + 2, _complete)
    assert store.get_user("0xaaa").reputation == 20

    _, user = store.delete_promise("p1", NOW + 3)
    assert user.total_promises == 1
    assert user.completed_promises == 1
    assert user.failed_promises == 0
    assert user.reputation == 10
    assert user.streak == 1
    assert user.last_active == NOW + 3


def test_sessions_keep_first_visit(store):
    store.record_session("s1", "1.2.3.4", NOW)
    s = store.record_session("s1", "5.6.7.8", NOW + 60)
    assert s.first_visit == NOW
    assert s.last_active == NOW + 60
    assert s.ip == "5.6.7.8"
    assert len(store.list_sessions()) == 1


def test_resolved_outcomes_in_resolution_order(store):
    store.insert_promise(_promise("p1"))
    store.insert_promise(_promise("p2"))
    store.insert_promise(_promise("p3"))
    store.resolve_promise("p2", PromiseStatus.FAILED, None, NOW + 1, lambda u: u)
    store.resolve_promise("p1", PromiseStatus.COMPLETED, None, NOW + 2, lambda u: u)
    assert store.resolved_outcomes("0xaaa") == [PromiseStatus.FAILED, PromiseStatus.COMPLETED]


def test_global_stats(store):
    store.insert_promise(_promise("p1"))
    store.insert_promise(_promise("p2"))
    store.insert_promise(_promise("p3", owner="0xbbb"))
    store.resolve_promise("p3", PromiseStatus.COMPLETED, None, NOW, _complete)
    stats = store.global_stats()
    assert stats.total_users == 2
    assert stats.total_promises == 3
    assert stats.active_promises == 2
    assert stats.completed_promises == 1
    assert stats.failed_promises == 0
    assert stats.completion_rate == 33.33
    assert stats.average_reputation == 5.0
    assert stats.top_performer == "0xbbb"
    assert stats.highest_streak == 1


def test_global_stats_empty(store):
    stats = store.global_stats()
    assert stats.total_promises == 0
    assert stats.completion_rate == 0.0
    assert stats.top_performer is None


def test_sqlite_errors_become_upstream_errors(store):
    store.db.execute("DROP TABLE promises")
    store.db.commit()
    with pytest.raises(UpstreamError):
        store.get_promise("p1")
    with pytest.raises(UpstreamError):
        store.insert_promise(_promise())


def test_file_backed_store_persists(tmp_path):
    path = str(tmp_path / "registry.db")
    s = LedgerStore(path)
    s.insert_promise(_promise())
    s.close()
    reopened = LedgerStore(path)
    try:
        assert reopened.get_promise("promise_1") is not None
        assert reopened.get_user("0xaaa").total_promises == 1
    finally:
        reopened.close()
