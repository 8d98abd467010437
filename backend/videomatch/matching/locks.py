# videomatch/matching/locks.py
import json
import logging
import secrets
from typing import Optional

from videomatch.common.errors import LockContention, ValidationError
from videomatch.matching.records import now_ms
from videomatch.matching.redis_store import StoreKeys, count_pattern, delete_pattern

logger = logging.getLogger(__name__)


class LockHandle:
    def __init__(self, r, key: str, token: str):
        self.r = r
        self.key = key
        self.token = token
        self.released = False

    def release(self) -> bool:
        """Delete the lock only if we still own it."""
        if self.released:
            return False

        def _release(pipe):
            raw = pipe.get(self.key)
            owned = _token_of(raw) == self.token
            pipe.multi()
            if owned:
                pipe.delete(self.key)
            return owned

        owned = self.r.transaction(_release, self.key, value_from_callable=True)
        self.released = True
        if not owned:
            logger.info("lock %s expired before release", self.key)
        return owned

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


def _token_of(raw) -> Optional[str]:
    if raw is None:
        return None
    try:
        return json.loads(raw).get("token")
    except (ValueError, AttributeError):
        return None


class PairingLock:
    """Short-lived mutual exclusion over an unordered pair of usernames.

    (a, b) and (b, a) map to the same key. A holder that crashes is released
    by the key's TTL.
    """

    def __init__(self, r, keys: StoreKeys, ttl_sec: float = 10):
        self.r = r
        self.keys = keys
        self.ttl_sec = ttl_sec

    def try_acquire(self, a: str, b: str, ttl_sec: Optional[float] = None) -> Optional[LockHandle]:
        if a == b:
            raise ValidationError("cannot lock a user with themselves")
        return self._try_key(self.keys.lock(a, b), ttl_sec or self.ttl_sec)

    def acquire(self, a: str, b: str, ttl_sec: Optional[float] = None) -> LockHandle:
        handle = self.try_acquire(a, b, ttl_sec)
        if handle is None:
            raise LockContention(f"pair {a}/{b} is locked")
        return handle

    def try_acquire_room(self, room_name: str, ttl_sec: Optional[float] = None) -> Optional[LockHandle]:
        return self._try_key(self.keys.reconcile_lock(room_name), ttl_sec or self.ttl_sec)

    def _try_key(self, key: str, ttl_sec: float) -> Optional[LockHandle]:
        token = secrets.token_hex(16)
        payload = json.dumps({"token": token, "acquiredAt": now_ms()})
        if not self.r.set(key, payload, nx=True, px=max(int(ttl_sec * 1000), 1)):
            return None
        return LockHandle(self.r, key, token)

    def count(self) -> int:
        return count_pattern(self.r, self.keys.lock_pattern)

    def stale_keys(self, max_age_sec: int):
        cutoff = now_ms() - int(max_age_sec * 1000)
        for key in self.r.scan_iter(match=self.keys.lock_pattern, count=200):
            raw = self.r.get(key)
            if raw is None:
                continue
            try:
                acquired_at = int(json.loads(raw)["acquiredAt"])
            except (ValueError, KeyError, TypeError):
                yield key
                continue
            if acquired_at < cutoff or self.r.ttl(key) == -1:
                yield key

    def clear_stale(self, max_age_sec: int) -> int:
        cleared = 0
        for key in list(self.stale_keys(max_age_sec)):
            cleared += self.r.delete(key)
        if cleared:
            logger.warning("cleared %d stale pair locks", cleared)
        return cleared

    def clear(self) -> int:
        return delete_pattern(self.r, self.keys.lock_pattern)
