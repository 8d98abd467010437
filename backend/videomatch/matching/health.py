# videomatch/matching/health.py
import logging
from collections import defaultdict
from typing import Optional

from videomatch.common.errors import ValidationError
from videomatch.common.redis_client import translate_store_errors
from videomatch.matching.services import MatchingEngine

logger = logging.getLogger(__name__)

RESET_TARGETS = ("cooldowns", "queue", "matches", "left-behind", "locks", "full")


class HealthSupervisor:
    def __init__(self, engine: MatchingEngine):
        self.engine = engine
        self.conf = engine.conf

    @translate_store_errors
    def snapshot(self) -> dict:
        """Counters and warnings for operators."""
        engine = self.engine
        queue = engine.queue.count()
        size = sum(queue.values())

        issues = []
        if size > self.conf.QUEUE_WARN_SIZE:
            issues.append(f"queue is unusually large ({size} tickets)")
        stale = list(engine.locks.stale_keys(self.conf.STALE_LOCK_AGE_SEC))
        if stale:
            issues.append(f"{len(stale)} stale pair locks")
        issues.extend(self.check_consistency()["issues"])

        return {
            "store": bool(engine.r.ping()),
            "queueSize": size,
            "waiting": queue["waiting"],
            "inCall": queue["in_call"],
            "matchCount": engine.matches.count(),
            "cooldownCount": engine.cooldowns.count(),
            "lockCount": engine.locks.count(),
            "leftBehindCount": engine.left_behind.count(),
            "issues": issues,
        }

    @translate_store_errors
    def check_consistency(self) -> dict:
        matches = self.engine.matches.all()
        queued = set(self.engine.queue.usernames())

        rooms_by_user = defaultdict(list)
        for room_name, match in matches.items():
            for username in match.users:
                rooms_by_user[username].append(room_name)

        multi_matched = {u: sorted(rooms) for u, rooms in rooms_by_user.items() if len(rooms) > 1}
        matched_and_queued = sorted(u for u in rooms_by_user if u in queued)
        orphans = sorted(set(self.engine.queue.orphans()))

        issues = []
        for username, rooms in multi_matched.items():
            issues.append(f"{username} is in {len(rooms)} matches: {', '.join(rooms)}")
        for username in matched_and_queued:
            issues.append(f"{username} is matched and still queued")
        if orphans:
            issues.append(f"{len(orphans)} queue members without a ticket")

        return {
            "consistent": not issues,
            "multiMatched": multi_matched,
            "matchedAndQueued": matched_and_queued,
            "orphans": orphans,
            "issues": issues,
        }

    @translate_store_errors
    def repair(self) -> dict:
        found = self.check_consistency()
        matches = self.engine.matches.all()

        dropped_matches = []
        for username, rooms in found["multiMatched"].items():
            # keep the oldest pairing, drop the younger ones
            live = sorted((matches[r] for r in rooms if r in matches), key=lambda m: m.matched_at)
            for match in live[1:]:
                if self.engine.matches.remove(match.room_name) is not None:
                    dropped_matches.append(match.room_name)
                    matches.pop(match.room_name, None)

        dropped_tickets = []
        for username in found["matchedAndQueued"]:
            if self.engine.queue.dequeue(username):
                dropped_tickets.append(username)

        for username in found["orphans"]:
            self.engine.queue.dequeue(username)

        repaired = {
            "droppedMatches": dropped_matches,
            "droppedTickets": dropped_tickets,
            "removedOrphans": found["orphans"],
        }
        if dropped_matches or dropped_tickets or found["orphans"]:
            logger.warning("consistency repair: %s", repaired)
        return repaired

    @translate_store_errors
    def clear_stale_locks(self, max_age_sec: Optional[int] = None) -> int:
        if max_age_sec is None:
            max_age_sec = self.conf.STALE_LOCK_AGE_SEC
        return self.engine.locks.clear_stale(max_age_sec)

    @translate_store_errors
    def reset(self, target: str) -> dict:
        if target not in RESET_TARGETS:
            raise ValidationError(f"unknown reset target {target!r}, expected one of {', '.join(RESET_TARGETS)}")

        engine = self.engine
        cleared = {}
        if target in ("cooldowns", "full"):
            cleared["cooldowns"] = engine.cooldowns.clear_all()
        if target in ("queue", "full"):
            cleared["queue"] = engine.queue.clear()
        if target in ("matches", "full"):
            cleared["matches"] = engine.matches.clear()
        if target in ("left-behind", "full"):
            cleared["leftBehind"] = engine.left_behind.clear_all()
        if target in ("locks", "full"):
            cleared["locks"] = engine.locks.clear()

        logger.warning("operator reset of %s: %s", target, cleared)
        return {"target": target, "cleared": cleared}
