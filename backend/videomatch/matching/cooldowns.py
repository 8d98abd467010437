# videomatch/matching/cooldowns.py
import logging
import math
from typing import Optional

from videomatch.common.errors import ValidationError
from videomatch.matching.records import (
    COOLDOWN_KINDS,
    COOLDOWN_NORMAL,
    COOLDOWN_SKIP,
    Cooldown,
    now_ms,
    pair_key,
)
from videomatch.matching.redis_store import StoreKeys, count_pattern, delete_pattern

logger = logging.getLogger(__name__)


class CooldownLedger:
    """Per-pair expiring records that keep two users from being re-paired.

    A normal end of call gets a short cooldown, an explicit skip a longer one.
    Lookups are symmetric: the key is the sorted pair.
    """

    def __init__(self, r, keys: StoreKeys, normal_sec: int = 30, skip_sec: int = 120):
        self.r = r
        self.keys = keys
        self.durations = {COOLDOWN_NORMAL: normal_sec, COOLDOWN_SKIP: skip_sec}

    def record(self, a: str, b: str, kind: str = COOLDOWN_NORMAL) -> Cooldown:
        if kind not in COOLDOWN_KINDS:
            raise ValidationError(f"unknown cooldown kind {kind!r}")
        if a == b:
            raise ValidationError("cooldown needs two distinct users")

        seconds = self.durations[kind]
        key = self.keys.cooldown(a, b)

        current = self.get(a, b)
        if current is not None and self.remaining(a, b) >= seconds:
            # never shorten a longer cooldown (a skip followed by a normal end)
            return current

        cooldown = Cooldown(pair_key=pair_key(a, b), kind=kind, expires_at=now_ms() + seconds * 1000)
        self.r.set(key, cooldown.dumps(), ex=seconds)
        log = logger.info if kind == COOLDOWN_SKIP else logger.debug
        log("cooldown %s between %s and %s for %ss", kind, a, b, seconds)
        return cooldown

    def remaining(self, a: str, b: str) -> int:
        pttl = self.r.pttl(self.keys.cooldown(a, b))
        if pttl is None or pttl <= 0:
            return 0
        return math.ceil(pttl / 1000)

    def get(self, a: str, b: str) -> Optional[Cooldown]:
        key = self.keys.cooldown(a, b)
        raw = self.r.get(key)
        cooldown = Cooldown.loads(raw)
        if raw is not None and cooldown is None:
            self.r.delete(key)
        return cooldown

    def clear(self, a: str, b: str) -> bool:
        cleared = bool(self.r.delete(self.keys.cooldown(a, b)))
        if cleared:
            logger.info("cleared cooldown between %s and %s", a, b)
        return cleared

    def count(self) -> int:
        return count_pattern(self.r, self.keys.cooldown_pattern)

    def clear_all(self) -> int:
        return delete_pattern(self.r, self.keys.cooldown_pattern)
