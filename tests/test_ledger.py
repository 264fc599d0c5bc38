"""
Tests for the session ledger.
"""
import json
import os
import threading
from datetime import timedelta

import pytest

from smartpay_sdk.ledger import SessionLedger, normalize_identity


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def clocked_ledger(tmp_path, clock):
    store = SessionLedger(str(tmp_path / "sessions.json"), session_ttl=3600, clock=clock)
    yield store
    store.close()


def test_record_is_idempotent(clocked_ledger, tmp_path):
    first = clocked_ledger.record("hash-1", "0xAbC", amount=50_000, network="base-sepolia")
    second = clocked_ledger.record("hash-1", "0xAbC", amount=99_999, network="solana-devnet")

    assert second == first
    assert second.amount == 50_000

    with open(tmp_path / "sessions.json") as f:
        assert list(json.load(f)["sessions"]) == ["hash-1"]


def test_default_expiry_uses_ttl(clocked_ledger, clock):
    session = clocked_ledger.record("hash-1", "payer")
    assert session.issued_at == clock.now
    assert session.expires_at == clock.now + 3600


def test_expiry_boundary(clocked_ledger, clock):
    clocked_ledger.record("hash-1", "payer", expires_at=clock.now + 10)

    clock.now += 9.5
    assert clocked_ledger.is_active("payer")

    clock.now += 0.5  # expires_at == now
    assert not clocked_ledger.is_active("payer")
    assert clocked_ledger.active_sessions("payer") == []


def test_evm_identities_ignore_case(clocked_ledger):
    clocked_ledger.record("hash-1", "0xABCDEF0000000000000000000000000000000001")
    assert clocked_ledger.is_active("0xabcdef0000000000000000000000000000000001")


def test_base58_identities_are_case_sensitive(clocked_ledger):
    clocked_ledger.record("hash-1", "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU")
    assert clocked_ledger.is_active("4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU")
    assert not clocked_ledger.is_active("4zmmc9srt5ri5x14gagxhahii3gnpaeerypjgzjdncdu")


def test_normalize_identity():
    assert normalize_identity("0xABC") == "0xabc"
    assert normalize_identity("0XABC") == "0xabc"
    assert normalize_identity("ABC") == "ABC"


def test_time_remaining(clocked_ledger, clock):
    assert clocked_ledger.time_remaining("payer") == timedelta(0)

    clocked_ledger.record("hash-1", "payer", expires_at=clock.now + 100)
    clocked_ledger.record("hash-2", "payer", expires_at=clock.now + 300)
    clock.now += 50

    assert clocked_ledger.time_remaining("payer") == timedelta(seconds=250)
    assert [s.authorization_hash for s in clocked_ledger.active_sessions("payer")] == ["hash-1", "hash-2"]


def test_can_submit(clocked_ledger, clock):
    assert not clocked_ledger.can_submit("payer")
    clocked_ledger.record("hash-1", "payer")
    assert clocked_ledger.can_submit("payer")
    assert not clocked_ledger.can_submit("someone-else")


def test_purge_expired(clocked_ledger, clock):
    clocked_ledger.record("old", "payer", expires_at=clock.now + 1)
    clocked_ledger.record("new", "payer", expires_at=clock.now + 1000)
    clock.now += 1

    assert clocked_ledger.purge_expired() == 1
    assert clocked_ledger.get("old") is None
    assert clocked_ledger.get("new") is not None
    assert clocked_ledger.purge_expired() == 0


def test_persists_across_instances(tmp_path, clock):
    path = str(tmp_path / "sessions.json")
    SessionLedger(path, clock=clock).record("hash-1", "payer", transaction_hash="0xtx")

    reopened = SessionLedger(path, clock=clock)

    assert reopened.get("hash-1").transaction_hash == "0xtx"
    assert reopened.is_active("payer")


def test_env_path(tmp_path, monkeypatch):
    path = tmp_path / "nested" / "ledger.json"
    monkeypatch.setenv("SMARTPAY_LEDGER_PATH", str(path))

    store = SessionLedger()

    assert store.store_path == path
    assert path.exists()


@pytest.mark.skipif(os.name != "posix", reason="POSIX permissions only")
def test_file_permissions(tmp_path):
    path = tmp_path / "private" / "sessions.json"
    SessionLedger(str(path))
    assert oct(path.stat().st_mode & 0o777) == "0o600"
    assert oct(path.parent.stat().st_mode & 0o777) == "0o700"


def test_corrupt_file_reads_as_empty(tmp_path):
    path = tmp_path / "sessions.json"
    path.write_text("{not json")

    store = SessionLedger(str(path))

    assert store.get("anything") is None
    store.record("hash-1", "payer")
    assert store.get("hash-1") is not None


def test_concurrent_duplicate_records(clocked_ledger):
    results = []

    def record():
        results.append(clocked_ledger.record("hash-1", "payer", amount=1))

    threads = [threading.Thread(target=record) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len({r.issued_at for r in results}) == 1
    assert len(clocked_ledger.active_sessions("payer")) == 1


def test_sweeper_purges_in_background(clocked_ledger, clock):
    clocked_ledger.record("old", "payer", expires_at=clock.now + 1)
    clock.now += 5

    purged = threading.Event()
    original = clocked_ledger.purge_expired

    def tracking_purge():
        count = original()
        purged.set()
        return count

    clocked_ledger.purge_expired = tracking_purge
    clocked_ledger.start_sweeper(interval=0.05)
    try:
        assert purged.wait(5)
    finally:
        clocked_ledger.stop_sweeper()

    assert clocked_ledger.get("old") is None


def test_stop_sweeper_without_start(ledger):
    ledger.stop_sweeper()


def test_concurrent_reads_do_not_serialize(clocked_ledger, monkeypatch):
    """Readers share the file lock, so all of them can be inside a read at once"""
    clocked_ledger.record("hash-1", "payer")
    readers = 4
    inside = threading.Barrier(readers, timeout=5)
    original = clocked_ledger._read_unlocked

    def read_together():
        inside.wait()
        return original()

    monkeypatch.setattr(clocked_ledger, "_read_unlocked", read_together)
    results = []
    errors = []

    def check():
        try:
            results.append(clocked_ledger.is_active("payer"))
        except threading.BrokenBarrierError as e:
            errors.append(e)

    threads = [threading.Thread(target=check) for _ in range(readers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert results == [True] * readers


def test_reads_do_not_take_the_writer_lock(clocked_ledger):
    clocked_ledger.record("hash-1", "payer")

    with clocked_ledger._thread_lock:
        assert clocked_ledger.is_active("payer")
        assert clocked_ledger.get("hash-1") is not None
