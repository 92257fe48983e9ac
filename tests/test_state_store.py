"""Tests for the replication state store."""

from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest

from crossvault.errors import AlreadyInProgress, FailureKind, StateError
from crossvault.models import ReplicationRecord, ReplicationStatus, SecretRef, TargetKey
from crossvault.state_store import ReplicationStateStore


@pytest.fixture
def key() -> TargetKey:
    return TargetKey(source=SecretRef(domain="source", path="/vault/creds"), dest_domain="dest", dest_path="/replica/creds")


def _record(key: TargetKey, **kwargs) -> ReplicationRecord:
    defaults = {
        "last_source_version": "v1",
        "last_dest_version": "d1",
        "last_applied_policy_hash": "abc",
        "status": ReplicationStatus.SYNCED,
        "last_attempt_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
        "attempt_count": 1,
    }
    defaults.update(kwargs)
    return ReplicationRecord(target_key=key, **defaults)


class TestTargetKey:
    def test_str(self, key) -> None:
        assert str(key) == "source:/vault/creds->dest:/replica/creds"


class TestPersistence:
    def test_survives_restart(self, state_path, key) -> None:
        ReplicationStateStore(state_path).put(_record(key))
        reopened = ReplicationStateStore(state_path)
        record = reopened.get(key)
        assert record == _record(key)

    @pytest.mark.parametrize("domain", ["prod:eu", "a->b"])
    def test_separator_in_domain_survives_restart(self, state_path, domain) -> None:
        """Records are reloaded by their own key, not by re-reading the label."""
        odd = TargetKey(source=SecretRef(domain=domain, path="/vault/creds"), dest_domain="dest", dest_path="/replica/creds")
        ReplicationStateStore(state_path).put(_record(odd))
        reopened = ReplicationStateStore(state_path)
        assert reopened.get(odd) == _record(odd)
        assert [r.target_key for r in reopened.records()] == [odd]

    def test_missing_file_is_empty(self, state_path) -> None:
        assert ReplicationStateStore(state_path).records() == []

    def test_in_memory_store(self, key) -> None:
        store = ReplicationStateStore(None)
        store.put(_record(key))
        assert store.get(key).last_source_version == "v1"
        assert store.path is None

    def test_failure_kind_persisted(self, state_path, key) -> None:
        ReplicationStateStore(state_path).put(
            _record(key, status=ReplicationStatus.FAILED, last_failure=FailureKind.THROTTLED)
        )
        assert ReplicationStateStore(state_path).get(key).last_failure is FailureKind.THROTTLED

    def test_corrupt_file_raises(self, state_path) -> None:
        state_path.parent.mkdir(parents=True)
        state_path.write_text("{not json")
        with pytest.raises(StateError):
            ReplicationStateStore(state_path)

    def test_no_temp_file_left(self, state_path, key) -> None:
        ReplicationStateStore(state_path).put(_record(key))
        assert [p.name for p in state_path.parent.iterdir()] == ["state.json"]


class TestDecommission:
    def test_explicit_removal(self, state_path, key) -> None:
        store = ReplicationStateStore(state_path)
        store.put(_record(key))
        assert store.decommission(key) is True
        assert ReplicationStateStore(state_path).get(key) is None

    def test_unknown_key(self, store, key) -> None:
        assert store.decommission(key) is False


class TestLease:
    def test_non_blocking_conflict(self, store, key) -> None:
        with store.lease(key):
            with pytest.raises(AlreadyInProgress):
                with store.lease(key, blocking=False):
                    pass

    def test_distinct_keys_independent(self, store, key) -> None:
        other = TargetKey(source=key.source, dest_domain="dest", dest_path="/other")
        with store.lease(key):
            with store.lease(other, blocking=False):
                pass

    def test_blocking_timeout(self, store, key) -> None:
        with store.lease(key):
            with pytest.raises(AlreadyInProgress):
                with store.lease(key, timeout=0.05):
                    pass

    def test_released_after_block(self, store, key) -> None:
        with store.lease(key):
            pass
        with store.lease(key, blocking=False):
            pass

    def test_blocking_waits_for_holder(self, store, key) -> None:
        order: list[str] = []
        held = threading.Event()

        def holder() -> None:
            with store.lease(key):
                held.set()
                threading.Event().wait(0.1)
                order.append("holder")

        t = threading.Thread(target=holder)
        t.start()
        held.wait()
        with store.lease(key):
            order.append("waiter")
        t.join()
        assert order == ["holder", "waiter"]
