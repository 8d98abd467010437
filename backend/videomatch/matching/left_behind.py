# videomatch/matching/left_behind.py
import logging
from typing import Optional

from videomatch.matching.records import LeftBehindRecord
from videomatch.matching.redis_store import MatchTable, StoreKeys, count_pattern, delete_pattern

logger = logging.getLogger(__name__)

STATUS_NONE = "none"
STATUS_LEFT_BEHIND = "left_behind"
STATUS_ALREADY_MATCHED = "already_matched"


class LeftBehindTracker:
    """Remembers users whose partner vanished mid-call.

    The client reads ``status`` to choose between following the user to a new
    room right away and showing a "partner left" countdown.
    """

    def __init__(self, r, keys: StoreKeys, matches: MatchTable, ttl_sec: int = 300):
        self.r = r
        self.keys = keys
        self.matches = matches
        self.ttl_sec = ttl_sec

    def mark(self, username, previous_room, disconnected_from, new_room_name=None) -> LeftBehindRecord:
        record = LeftBehindRecord(
            username=username,
            previous_room=previous_room,
            disconnected_from=disconnected_from,
            new_room_name=new_room_name,
        )
        self.r.set(self.keys.left_behind(username), record.dumps(), ex=self.ttl_sec)
        logger.info("%s left behind in %s by %s", username, previous_room, disconnected_from)
        return record

    def get(self, username) -> Optional[LeftBehindRecord]:
        key = self.keys.left_behind(username)
        raw = self.r.get(key)
        record = LeftBehindRecord.loads(raw)
        if raw is not None and record is None:
            self.r.delete(key)
        return record

    def mark_processed(self, username, room_name) -> Optional[LeftBehindRecord]:
        record = self.get(username)
        if record is None:
            return None
        record.processed = True
        record.new_room_name = room_name
        self.r.set(self.keys.left_behind(username), record.dumps(), keepttl=True)
        return record

    def status(self, username) -> dict:
        record = self.get(username)
        if record is None:
            return {"status": STATUS_NONE}

        # the match the record refers to is gone, so any match now is a new one
        match = self.matches.get_by_user(username)
        if match is not None:
            if not record.processed or record.new_room_name != match.room_name:
                self.mark_processed(username, match.room_name)
            return {
                "status": STATUS_ALREADY_MATCHED,
                "roomName": match.room_name,
                "matchedWith": match.partner_of(username),
            }

        data = {
            "status": STATUS_LEFT_BEHIND,
            "previousRoom": record.previous_room,
            "disconnectedFrom": record.disconnected_from,
        }
        if record.new_room_name:
            data["newRoomName"] = record.new_room_name
        return data

    def clear(self, username) -> bool:
        return bool(self.r.delete(self.keys.left_behind(username)))

    def count(self) -> int:
        return count_pattern(self.r, self.keys.left_behind_pattern)

    def clear_all(self) -> int:
        return delete_pattern(self.r, self.keys.left_behind_pattern)
