# videomatch/matching/conf.py
from dataclasses import dataclass, fields

from django.conf import settings


@dataclass(frozen=True)
class MatchingSettings:
    """Tunables of the matching engine.

    The durations were tuned by hand on the live service; none of them is
    load-bearing for correctness.
    """

    KEY_PREFIX: str = "matching"
    TICKET_MAX_AGE_SEC: int = 5 * 60
    MATCH_MAX_AGE_SEC: int = 10 * 60
    COOLDOWN_NORMAL_SEC: int = 30
    COOLDOWN_SKIP_SEC: int = 2 * 60
    LOCK_TTL_SEC: int = 10
    STALE_LOCK_AGE_SEC: int = 15
    LEFT_BEHIND_TTL_SEC: int = 5 * 60
    DISCONNECT_GRACE_SEC: float = 3
    RECONCILE_DEBOUNCE_SEC: float = 3
    RECONCILE_INTERVAL_SEC: int = 30
    MATCH_SETTLE_SEC: int = 20
    MAX_PARTICIPANTS: int = 2
    ROOM_EMPTY_TIMEOUT_SEC: int = 5 * 60
    RESCAN_ATTEMPTS: int = 20
    RESCAN_BACKOFF_SEC: float = 0.005
    QUEUE_WARN_SIZE: int = 50

    @classmethod
    def from_dict(cls, values: dict) -> "MatchingSettings":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (values or {}).items() if k in known})


def get_matching_settings() -> MatchingSettings:
    return MatchingSettings.from_dict(getattr(settings, "MATCHING", {}))
