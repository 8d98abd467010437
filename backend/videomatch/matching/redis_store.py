# videomatch/matching/redis_store.py
import logging
import secrets
import time
from typing import Dict, List, Optional, Tuple

from videomatch.matching.records import (
    IN_CALL,
    TICKET_STATES,
    WAITING,
    Match,
    Ticket,
    now_ms,
    pair_key,
)

logger = logging.getLogger(__name__)

USED_ROOM_NAMES_TTL_SEC = 60 * 60 * 24  # 24h


class StoreKeys:
    """Names of every key the matching backend owns, under one prefix."""

    def __init__(self, prefix: str = "matching"):
        self.prefix = prefix

    @property
    def tickets(self) -> str:
        return f"{self.prefix}:tickets"

    def queue(self, state: str) -> str:
        return f"{self.prefix}:queue:{state}"

    @property
    def matches(self) -> str:
        return f"{self.prefix}:matches"

    @property
    def used_rooms(self) -> str:
        return f"{self.prefix}:rooms:used"

    def cooldown(self, a: str, b: str) -> str:
        return f"{self.prefix}:cooldown:{pair_key(a, b)}"

    @property
    def cooldown_pattern(self) -> str:
        return f"{self.prefix}:cooldown:*"

    def lock(self, a: str, b: str) -> str:
        return f"{self.prefix}:lock:{pair_key(a, b)}"

    @property
    def lock_pattern(self) -> str:
        return f"{self.prefix}:lock:*"

    def left_behind(self, username: str) -> str:
        return f"{self.prefix}:left_behind:{username}"

    @property
    def left_behind_pattern(self) -> str:
        return f"{self.prefix}:left_behind:*"

    def reconcile_debounce(self, room_name: str) -> str:
        return f"{self.prefix}:reconcile:debounce:{room_name}"

    def reconcile_lock(self, room_name: str) -> str:
        return f"{self.prefix}:reconcile:lock:{room_name}"


def delete_pattern(r, pattern: str) -> int:
    deleted = 0
    for key in r.scan_iter(match=pattern, count=200):
        deleted += r.delete(key)
    return deleted


def count_pattern(r, pattern: str) -> int:
    return sum(1 for _ in r.scan_iter(match=pattern, count=200))


class QueueStore:
    """Tickets of users waiting for a partner.

    A ticket body lives in one hash; each queue class is a sorted set of
    usernames scored by ``joinedAt``. Every mutation touches body and index in
    a single MULTI/EXEC so readers never see one without the other.
    """

    def __init__(self, r, keys: StoreKeys):
        self.r = r
        self.keys = keys

    def enqueue(self, ticket: Ticket) -> Ticket:
        other = IN_CALL if ticket.state == WAITING else WAITING
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(self.keys.tickets, ticket.username, ticket.dumps())
        pipe.zrem(self.keys.queue(other), ticket.username)
        pipe.zadd(self.keys.queue(ticket.state), {ticket.username: ticket.joined_at})
        pipe.execute()
        return ticket

    def dequeue(self, username: str) -> bool:
        """Remove ``username``'s ticket. Only one concurrent caller gets True."""
        pipe = self.r.pipeline(transaction=True)
        pipe.hdel(self.keys.tickets, username)
        for state in TICKET_STATES:
            pipe.zrem(self.keys.queue(state), username)
        deleted, *_ = pipe.execute()
        return bool(deleted)

    def get(self, username: str) -> Optional[Ticket]:
        raw = self.r.hget(self.keys.tickets, username)
        ticket = Ticket.loads(raw)
        if raw is not None and ticket is None:
            self.dequeue(username)
        return ticket

    def list(self, state: str) -> List[Ticket]:
        members = self.r.zrange(self.keys.queue(state), 0, -1)
        if not members:
            return []
        raws = self.r.hmget(self.keys.tickets, members)

        tickets = []
        for username, raw in zip(members, raws):
            ticket = Ticket.loads(raw)
            if ticket is None:
                logger.warning("dropping queue member %s without a valid ticket", username)
                self.dequeue(username)
                continue
            if ticket.state != state:
                self.r.zrem(self.keys.queue(state), username)
                continue
            tickets.append(ticket)
        return tickets

    def position(self, username: str) -> Optional[Tuple[Ticket, int, int]]:
        ticket = self.get(username)
        if ticket is None:
            return None
        queue_key = self.keys.queue(ticket.state)
        pipe = self.r.pipeline(transaction=True)
        pipe.zrank(queue_key, username)
        pipe.zcard(queue_key)
        rank, size = pipe.execute()
        if rank is None:
            # body without index entry, repair it
            self.enqueue(ticket)
            rank, size = self.r.zrank(queue_key, username), self.r.zcard(queue_key)
        return ticket, rank + 1, size

    def sweep(self, max_age_sec: int) -> List[Ticket]:
        cutoff = now_ms() - int(max_age_sec * 1000)
        swept = []
        for state in TICKET_STATES:
            stale = self.r.zrangebyscore(self.keys.queue(state), "-inf", f"({cutoff}")
            for username in stale:
                ticket = self.get(username)
                if self.dequeue(username) and ticket is not None:
                    swept.append(ticket)
        if swept:
            logger.info("swept %d stale tickets: %s", len(swept), [t.username for t in swept])
        return swept

    def usernames(self) -> List[str]:
        return self.r.hkeys(self.keys.tickets)

    def orphans(self) -> List[str]:
        """Queue members whose ticket body is missing."""
        found = []
        for state in TICKET_STATES:
            members = self.r.zrange(self.keys.queue(state), 0, -1)
            if not members:
                continue
            raws = self.r.hmget(self.keys.tickets, members)
            found.extend(u for u, raw in zip(members, raws) if raw is None)
        return found

    def count(self) -> Dict[str, int]:
        return {state: self.r.zcard(self.keys.queue(state)) for state in TICKET_STATES}

    def clear(self) -> int:
        cleared = self.r.hlen(self.keys.tickets)
        self.r.delete(self.keys.tickets, *(self.keys.queue(s) for s in TICKET_STATES))
        return cleared


class MatchTable:
    """Active pairings keyed by room name. The source of truth for live pairs."""

    def __init__(self, r, keys: StoreKeys):
        self.r = r
        self.keys = keys

    def create(self, match: Match) -> bool:
        """Store ``match`` unless its room or either user is already taken.

        Runs as an optimistic WATCH/MULTI transaction over the whole table so
        two concurrent creates can never both put the same user in a match.
        """

        def _create(pipe):
            existing = pipe.hgetall(self.keys.matches)
            conflict = match.room_name in existing
            if not conflict:
                for raw in existing.values():
                    other = Match.loads(raw)
                    if other and (other.involves(match.user1) or other.involves(match.user2)):
                        conflict = True
                        break
            pipe.multi()
            if not conflict:
                pipe.hset(self.keys.matches, match.room_name, match.dumps())
            return not conflict

        return self.r.transaction(_create, self.keys.matches, value_from_callable=True)

    def get(self, room_name: str) -> Optional[Match]:
        raw = self.r.hget(self.keys.matches, room_name)
        match = Match.loads(raw)
        if raw is not None and match is None:
            self.r.hdel(self.keys.matches, room_name)
        return match

    def all(self) -> Dict[str, Match]:
        matches = {}
        for room_name, raw in self.r.hgetall(self.keys.matches).items():
            match = Match.loads(raw)
            if match is None:
                self.r.hdel(self.keys.matches, room_name)
                continue
            matches[room_name] = match
        return matches

    def get_by_user(self, username: str) -> Optional[Match]:
        for match in self.all().values():
            if match.involves(username):
                return match
        return None

    def remove(self, room_name: str) -> Optional[Match]:
        """Delete the match for ``room_name``; returns it to exactly one caller."""
        pipe = self.r.pipeline(transaction=True)
        pipe.hget(self.keys.matches, room_name)
        pipe.hdel(self.keys.matches, room_name)
        raw, deleted = pipe.execute()
        if not deleted:
            return None
        return Match.loads(raw)

    def replace(self, room_name: str, match: Match) -> None:
        self.r.hset(self.keys.matches, room_name, match.dumps())

    def sweep(self, max_age_sec: int) -> List[Match]:
        cutoff = now_ms() - int(max_age_sec * 1000)
        swept = []
        for room_name, match in self.all().items():
            if match.matched_at < cutoff and self.remove(room_name):
                swept.append(match)
        if swept:
            logger.info("swept %d stale matches: %s", len(swept), [m.room_name for m in swept])
        return swept

    def mint_room_name(self) -> str:
        stamp = format(int(time.time()), "x")
        for _ in range(10):
            room_name = f"match-{stamp}-{secrets.token_urlsafe(12)}"
            if self.r.sadd(self.keys.used_rooms, room_name):
                self.r.expire(self.keys.used_rooms, USED_ROOM_NAMES_TTL_SEC)
                return room_name
        raise RuntimeError("could not mint a unique room name")

    def count(self) -> int:
        return self.r.hlen(self.keys.matches)

    def clear(self) -> int:
        cleared = self.r.hlen(self.keys.matches)
        self.r.delete(self.keys.matches)
        return cleared
