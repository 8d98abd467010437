# videomatch/matching/records.py
"""Records kept in the shared store.

Every record is a dataclass serialised as a JSON object with camelCase keys
(the format the web client already reads). Timestamps are epoch milliseconds.
``loads`` never raises: anything that does not decode into a valid record
yields ``None`` and the reader drops it.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

WAITING = "waiting"
IN_CALL = "in_call"
TICKET_STATES = (WAITING, IN_CALL)

COOLDOWN_NORMAL = "normal"
COOLDOWN_SKIP = "skip"
COOLDOWN_KINDS = (COOLDOWN_NORMAL, COOLDOWN_SKIP)


def now_ms() -> int:
    return int(time.time() * 1000)


def pair_key(a: str, b: str) -> str:
    lo, hi = sorted((a, b))
    return f"{lo}:{hi}"


def _is_timestamp(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


class RecordError(ValueError):
    pass


def _require(data: dict, key: str, kind):
    value = data.get(key)
    if not isinstance(value, kind) or (isinstance(value, str) and not value):
        raise RecordError(f"field {key!r} missing or invalid")
    return value


class _Record:
    def dumps(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def loads(cls, raw):
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise RecordError("not an object")
            return cls.from_dict(data)
        except (ValueError, TypeError) as e:
            logger.warning("dropping corrupt %s record: %s", cls.__name__, e)
            return None


@dataclass
class LastMatch:
    partner: str
    timestamp: int


@dataclass
class Ticket(_Record):
    username: str
    joined_at: int = field(default_factory=now_ms)
    state: str = WAITING
    use_demo: bool = False
    room_name: Optional[str] = None
    last_match: Optional[LastMatch] = None

    def to_dict(self) -> dict:
        data = {
            "username": self.username,
            "joinedAt": self.joined_at,
            "state": self.state,
            "useDemo": self.use_demo,
        }
        if self.room_name:
            data["roomName"] = self.room_name
        if self.last_match:
            data["lastMatch"] = {
                "partner": self.last_match.partner,
                "timestamp": self.last_match.timestamp,
            }
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Ticket":
        joined_at = data.get("joinedAt")
        if not _is_timestamp(joined_at):
            raise RecordError("joinedAt missing or negative")
        state = data.get("state", WAITING)
        if state not in TICKET_STATES:
            raise RecordError(f"unknown state {state!r}")
        last = data.get("lastMatch")
        last_match = None
        if isinstance(last, dict) and last.get("partner"):
            last_match = LastMatch(
                partner=str(last["partner"]), timestamp=int(last.get("timestamp") or 0)
            )
        return cls(
            username=_require(data, "username", str),
            joined_at=joined_at,
            state=state,
            use_demo=bool(data.get("useDemo", False)),
            room_name=data.get("roomName") or None,
            last_match=last_match,
        )


@dataclass
class Match(_Record):
    room_name: str
    user1: str
    user2: str
    matched_at: int = field(default_factory=now_ms)
    use_demo: bool = False

    def __post_init__(self):
        if self.user1 == self.user2:
            raise RecordError("a match needs two distinct users")

    @property
    def users(self):
        return (self.user1, self.user2)

    def involves(self, username: str) -> bool:
        return username in (self.user1, self.user2)

    def partner_of(self, username: str) -> Optional[str]:
        if username == self.user1:
            return self.user2
        if username == self.user2:
            return self.user1
        return None

    def to_dict(self) -> dict:
        return {
            "roomName": self.room_name,
            "user1": self.user1,
            "user2": self.user2,
            "matchedAt": self.matched_at,
            "useDemo": self.use_demo,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Match":
        matched_at = data.get("matchedAt")
        if not _is_timestamp(matched_at):
            raise RecordError("matchedAt missing or negative")
        return cls(
            room_name=_require(data, "roomName", str),
            user1=_require(data, "user1", str),
            user2=_require(data, "user2", str),
            matched_at=matched_at,
            use_demo=bool(data.get("useDemo", False)),
        )


@dataclass
class Cooldown(_Record):
    pair_key: str
    kind: str
    expires_at: int

    def to_dict(self) -> dict:
        return {"pairKey": self.pair_key, "kind": self.kind, "expiresAt": self.expires_at}

    @classmethod
    def from_dict(cls, data: dict) -> "Cooldown":
        kind = data.get("kind")
        if kind not in COOLDOWN_KINDS:
            raise RecordError(f"unknown cooldown kind {kind!r}")
        expires_at = data.get("expiresAt")
        if not _is_timestamp(expires_at):
            raise RecordError("expiresAt missing or negative")
        return cls(pair_key=_require(data, "pairKey", str), kind=kind, expires_at=expires_at)


@dataclass
class LeftBehindRecord(_Record):
    username: str
    previous_room: str
    disconnected_from: str
    created_at: int = field(default_factory=now_ms)
    processed: bool = False
    new_room_name: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "username": self.username,
            "previousRoom": self.previous_room,
            "disconnectedFrom": self.disconnected_from,
            "createdAt": self.created_at,
            "processed": self.processed,
        }
        if self.new_room_name:
            data["newRoomName"] = self.new_room_name
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "LeftBehindRecord":
        created_at = data.get("createdAt")
        if not _is_timestamp(created_at):
            raise RecordError("createdAt missing or negative")
        return cls(
            username=_require(data, "username", str),
            previous_room=_require(data, "previousRoom", str),
            disconnected_from=_require(data, "disconnectedFrom", str),
            created_at=created_at,
            processed=bool(data.get("processed", False)),
            new_room_name=data.get("newRoomName") or None,
        )
