import json

import pytest

from videomatch.common.errors import LockContention, ValidationError
from videomatch.matching.locks import PairingLock
from videomatch.matching.records import now_ms
from videomatch.matching.redis_store import StoreKeys


@pytest.fixture
def keys():
    return StoreKeys("test")


@pytest.fixture
def locks(r, keys):
    return PairingLock(r, keys, ttl_sec=10)


def test_lock_is_symmetric(locks):
    handle = locks.try_acquire("alice", "bob")
    assert handle is not None
    assert locks.try_acquire("bob", "alice") is None
    with pytest.raises(LockContention):
        locks.acquire("bob", "alice")

    assert handle.release()
    assert locks.try_acquire("bob", "alice") is not None


def test_lock_has_ttl(locks, r, keys):
    locks.try_acquire("alice", "bob", ttl_sec=5)
    assert 0 < r.ttl(keys.lock("alice", "bob")) <= 5


def test_fractional_ttl_is_kept_in_milliseconds(locks, r, keys):
    assert locks.try_acquire("alice", "bob", ttl_sec=0.5) is not None
    assert 0 < r.pttl(keys.lock("alice", "bob")) <= 500


def test_self_lock_is_rejected(locks):
    with pytest.raises(ValidationError):
        locks.try_acquire("alice", "alice")


def test_release_never_deletes_a_successors_lock(locks, r, keys):
    first = locks.try_acquire("alice", "bob")
    # first holder's lock expires and somebody else takes it
    r.delete(keys.lock("alice", "bob"))
    second = locks.try_acquire("alice", "bob")

    assert first.release() is False
    assert r.exists(keys.lock("alice", "bob"))
    assert second.release() is True
    assert not r.exists(keys.lock("alice", "bob"))


def test_handle_is_a_context_manager(locks, r, keys):
    with locks.acquire("alice", "bob"):
        assert r.exists(keys.lock("alice", "bob"))
    assert not r.exists(keys.lock("alice", "bob"))


def test_room_locks_are_separate_from_pair_locks(locks):
    assert locks.try_acquire_room("R1") is not None
    assert locks.try_acquire_room("R1") is None
    assert locks.try_acquire("alice", "bob") is not None
    assert locks.count() == 1


def test_clear_stale(locks, r, keys):
    locks.try_acquire("alice", "bob")
    old = json.dumps({"token": "x", "acquiredAt": now_ms() - 60 * 1000})
    r.set(keys.lock("carol", "dave"), old, ex=10)
    r.set(keys.lock("erin", "frank"), json.dumps({"token": "y", "acquiredAt": now_ms()}))

    assert sorted(locks.stale_keys(15)) == sorted(
        [keys.lock("carol", "dave"), keys.lock("erin", "frank")]
    )
    assert locks.clear_stale(15) == 2
    assert locks.count() == 1
    assert locks.clear() == 1
