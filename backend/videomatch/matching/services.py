# videomatch/matching/services.py
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Tuple

from videomatch.common.errors import NotFoundError, ValidationError
from videomatch.common.redis_client import get_redis, translate_store_errors
from videomatch.matching.conf import MatchingSettings, get_matching_settings
from videomatch.matching.cooldowns import CooldownLedger
from videomatch.matching.left_behind import LeftBehindTracker
from videomatch.matching.locks import PairingLock
from videomatch.matching.provider import ProviderError, get_provider
from videomatch.matching.records import (
    COOLDOWN_NORMAL,
    COOLDOWN_SKIP,
    IN_CALL,
    WAITING,
    LastMatch,
    Match,
    Ticket,
    now_ms,
)
from videomatch.matching.redis_store import MatchTable, QueueStore, StoreKeys

logger = logging.getLogger(__name__)

MATCHED = "matched"
IDLE = "idle"
USERNAME_MAX_LENGTH = 64
MAX_REMATCH_DEPTH = 3


@dataclass
class EnqueueResult:
    status: str
    room_name: Optional[str] = None
    matched_with: Optional[str] = None
    use_demo: bool = False

    @property
    def matched(self) -> bool:
        return self.status == MATCHED

    def to_dict(self) -> dict:
        data = {"status": self.status, "useDemo": self.use_demo}
        if self.room_name:
            data["roomName"] = self.room_name
        if self.matched_with:
            data["matchedWith"] = self.matched_with
        return data


@dataclass
class ScanPass:
    """Candidates one scan had to step over."""

    contended: List[str] = field(default_factory=list)
    restored: List[Ticket] = field(default_factory=list)


def validate_username(username, field: str = "username") -> str:
    if not isinstance(username, str) or not username.strip():
        raise ValidationError(f"{field} is required")
    if len(username) > USERNAME_MAX_LENGTH:
        raise ValidationError(f"{field} is longer than {USERNAME_MAX_LENGTH} characters")
    if ":" in username or not username.isprintable():
        raise ValidationError(f"{field} contains forbidden characters")
    return username


def validate_room_name(room_name, required: bool = True) -> Optional[str]:
    if room_name is None or room_name == "":
        if required:
            raise ValidationError("roomName is required")
        return None
    if not isinstance(room_name, str):
        raise ValidationError("roomName must be a string")
    return room_name


class MatchingEngine:
    """Admission, pair formation and dissolution of 1:1 calls.

    Any number of stateless instances may run this code against one Redis.
    The only hard mutual exclusion is the pair lock plus the atomic claim of
    the candidate's ticket; everything else tolerates stale reads.
    """

    def __init__(
        self, r, conf: Optional[MatchingSettings] = None, provider_factory: Optional[Callable] = None
    ):
        self.r = r
        self.conf = conf or get_matching_settings()
        self.provider_factory = provider_factory
        self.keys = StoreKeys(self.conf.KEY_PREFIX)
        self.queue = QueueStore(r, self.keys)
        self.matches = MatchTable(r, self.keys)
        self.locks = PairingLock(r, self.keys, self.conf.LOCK_TTL_SEC)
        self.cooldowns = CooldownLedger(
            r, self.keys, self.conf.COOLDOWN_NORMAL_SEC, self.conf.COOLDOWN_SKIP_SEC
        )
        self.left_behind = LeftBehindTracker(
            r, self.keys, self.matches, self.conf.LEFT_BEHIND_TTL_SEC
        )

    # ---- admission ----

    @translate_store_errors
    def enqueue(
        self,
        username,
        use_demo: bool = False,
        *,
        promote: bool = False,
        room_name: Optional[str] = None,
        last_partner: Optional[str] = None,
    ) -> EnqueueResult:
        validate_username(username)

        # 1) lazy staleness
        self.sweep()

        # 2) already paired: answer idempotently
        existing = self.matches.get_by_user(username)
        if existing is not None:
            self.queue.dequeue(username)
            return self._matched_result(existing, username)

        # 3) build (or refresh) our ticket, then look for a partner
        own = self.queue.get(username)
        ticket = self._next_ticket(username, use_demo, own, promote, room_name, last_partner)

        result = self._scan_and_match(ticket)
        if result is not None:
            return result

        # 4) nobody eligible: wait
        parked = self._park(ticket)
        if parked.matched:
            return parked

        # 5) a concurrent enqueue may have scanned before our ticket existed
        return self._settle(ticket) or parked

    def _next_ticket(self, username, use_demo, own, promote, room_name, last_partner) -> Ticket:
        state, room, last_match = WAITING, None, None
        if own is not None:
            state, room, last_match = own.state, own.room_name, own.last_match
            use_demo = use_demo or own.use_demo
        if promote:
            state, room = IN_CALL, room_name or room
        if last_partner:
            last_match = LastMatch(partner=last_partner, timestamp=now_ms())
        return Ticket(
            username=username,
            state=state,
            use_demo=bool(use_demo),
            room_name=room if state == IN_CALL else None,
            last_match=last_match,
        )

    def _candidates(self, username) -> Iterator[Ticket]:
        # users alone in a live room first, then plain waiters, oldest first
        for state in (IN_CALL, WAITING):
            for candidate in self.queue.list(state):
                if candidate.username == username:
                    continue
                if self.cooldowns.remaining(username, candidate.username) > 0:
                    continue
                yield candidate

    def _scan_and_match(
        self, ticket: Ticket, scan: Optional[ScanPass] = None, depth: int = 0
    ) -> Optional[EnqueueResult]:
        scan = scan if scan is not None else ScanPass()
        for candidate in self._candidates(ticket.username):
            handle = self.locks.try_acquire(ticket.username, candidate.username)
            if handle is None:
                logger.debug("pair %s/%s is locked, next candidate", ticket.username, candidate.username)
                scan.contended.append(candidate.username)
                continue
            with handle:
                result = self._commit(ticket, candidate, scan)
            # outside the pair lock, or the rematch could trip over it
            while scan.restored:
                self._rematch(scan.restored.pop(), depth)
            if result is not None:
                return result
        return None

    def _settle(self, ticket: Ticket, depth: int = 0) -> Optional[EnqueueResult]:
        """Rescan for a queued ``ticket`` until a pass steps over nobody.

        A candidate whose pair lock was held, or whose ticket another request
        had claimed, may be free a moment later. Only a pass without such
        candidates shows there is no partner right now.
        """
        username = ticket.username
        attempts = self.conf.RESCAN_ATTEMPTS
        for attempt in range(attempts):
            current = self.matches.get_by_user(username)
            if current is not None:
                self.queue.dequeue(username)
                return self._matched_result(current, username)
            if self.queue.get(username) is None:
                # claimed by a request that either pairs it or puts it back and rescans
                return None

            scan = ScanPass()
            try:
                result = self._scan_and_match(ticket, scan, depth)
            except ProviderError as e:
                logger.warning("no room for %s right now, stays queued: %s", username, e)
                return None
            if result is not None or not scan.contended:
                return result
            time.sleep(self.conf.RESCAN_BACKOFF_SEC * (attempt + 1))

        logger.warning("%s: candidates still contended after %d rescans", username, attempts)
        return None

    def _commit(self, ticket: Ticket, candidate: Ticket, scan: ScanPass) -> Optional[EnqueueResult]:
        username = ticket.username

        # the scan read is not atomic: re-check under the lock
        if self.cooldowns.remaining(username, candidate.username) > 0:
            return None
        if not self.queue.dequeue(candidate.username):
            logger.debug("candidate %s was taken by another request", candidate.username)
            scan.contended.append(candidate.username)
            return None

        match = Match(
            room_name=self._pick_room(ticket, candidate),
            user1=username,
            user2=candidate.username,
            use_demo=ticket.use_demo or candidate.use_demo,
        )
        fresh = match.room_name not in (ticket.room_name, candidate.room_name)
        if fresh:
            try:
                self._provision(match)
            except ProviderError:
                logger.error(
                    "could not create room %s, %s goes back to the queue", match.room_name, candidate.username
                )
                self._restore(candidate)
                raise

        if not self.matches.create(match):
            if fresh:
                self.close_room(match.room_name, match.use_demo)
            if self._restore(candidate):
                scan.restored.append(candidate)
            scan.contended.append(candidate.username)
            current = self.matches.get_by_user(username)
            if current is not None:
                self.queue.dequeue(username)
                return self._matched_result(current, username)
            return None

        # the candidate may have re-parked between our claim and the create
        for user in match.users:
            self.queue.dequeue(user)
            self.left_behind.mark_processed(user, match.room_name)
        logger.info("matched %s with %s in room %s", username, candidate.username, match.room_name)
        return self._matched_result(match, username)

    def _pick_room(self, ticket: Ticket, candidate: Ticket) -> str:
        if candidate.state == IN_CALL and candidate.room_name:
            return candidate.room_name
        if ticket.state == IN_CALL and ticket.room_name:
            return ticket.room_name
        return self.matches.mint_room_name()

    def _restore(self, ticket: Ticket) -> bool:
        """Put back a claimed ticket unless its owner got matched meanwhile."""
        self.queue.enqueue(ticket)
        if self.matches.get_by_user(ticket.username) is not None:
            self.queue.dequeue(ticket.username)
            return False
        return True

    def _rematch(self, ticket: Ticket, depth: int) -> None:
        # its owner may have scanned while we held the ticket
        if depth >= MAX_REMATCH_DEPTH:
            logger.debug("not rematching %s, depth %d", ticket.username, depth)
            return
        self._settle(ticket, depth + 1)

    def _rooms(self, use_demo: bool):
        return (self.provider_factory or get_provider)(use_demo)

    def _provision(self, match: Match) -> None:
        self._rooms(match.use_demo).create_room(
            match.room_name, self.conf.MAX_PARTICIPANTS, self.conf.ROOM_EMPTY_TIMEOUT_SEC
        )

    def close_room(self, room_name: str, use_demo: bool = False) -> None:
        """Delete a room nobody is left in. On failure the provider's empty timeout removes it."""
        try:
            self._rooms(use_demo).delete_room(room_name)
        except ProviderError as e:
            logger.warning("could not delete room %s: %s", room_name, e)

    def _park(self, ticket: Ticket) -> EnqueueResult:
        self.queue.enqueue(ticket)
        # a concurrent request may have matched us between scan and insert
        current = self.matches.get_by_user(ticket.username)
        if current is not None:
            self.queue.dequeue(ticket.username)
            return self._matched_result(current, ticket.username)
        logger.debug("%s waiting (%s)", ticket.username, ticket.state)
        return EnqueueResult(status=WAITING, use_demo=ticket.use_demo)

    @staticmethod
    def _matched_result(match: Match, username) -> EnqueueResult:
        return EnqueueResult(
            status=MATCHED,
            room_name=match.room_name,
            matched_with=match.partner_of(username),
            use_demo=match.use_demo,
        )

    def promote(self, username, match: Match, last_partner=None) -> EnqueueResult:
        """Send a user who is alone in ``match``'s room back to the queue.

        They keep the room, so whoever they are paired with next joins them.
        """
        logger.info("promoting %s to in_call on %s", username, match.room_name)
        return self.enqueue(
            username,
            match.use_demo,
            promote=True,
            room_name=match.room_name,
            last_partner=last_partner,
        )

    @translate_store_errors
    def sweep(self):
        tickets = self.queue.sweep(self.conf.TICKET_MAX_AGE_SEC)
        matches = self.matches.sweep(self.conf.MATCH_MAX_AGE_SEC)
        return tickets, matches

    # ---- dissolution ----

    def _match_for(self, username, room_name=None) -> Optional[Match]:
        if room_name:
            match = self.matches.get(room_name)
            if match is not None and match.involves(username):
                return match
        return self.matches.get_by_user(username)

    @translate_store_errors
    def cancel(self, username) -> dict:
        validate_username(username)

        ticket = self.queue.get(username)
        removed = self.queue.dequeue(username)
        self.left_behind.clear(username)

        match = self.matches.get_by_user(username)
        if match is not None and self.matches.remove(match.room_name) is not None:
            removed = True
            partner = match.partner_of(username)
            logger.info("%s left room %s, %s stays", username, match.room_name, partner)
            self.cooldowns.record(username, partner, COOLDOWN_NORMAL)
            self.promote(partner, match, last_partner=username)
        elif removed and ticket is not None and ticket.state == IN_CALL and ticket.room_name:
            # they were the last one in that room
            if self.matches.get(ticket.room_name) is None:
                logger.info("%s left room %s empty", username, ticket.room_name)
                self.close_room(ticket.room_name, ticket.use_demo)

        return {"removed": removed}

    @translate_store_errors
    def end_call(self, username, room_name=None) -> dict:
        validate_username(username)
        match = self._match_for(username, validate_room_name(room_name, required=False))
        outcome = self.cancel(username)
        if match is None:
            return {"status": "no_match_found", "removed": outcome["removed"]}
        return {"status": "ended", "otherUser": match.partner_of(username)}

    @translate_store_errors
    def skip(self, username, room_name=None, partner=None) -> dict:
        validate_username(username)
        room_name = validate_room_name(room_name, required=False)

        match = self._match_for(username, room_name)
        if match is None:
            return {"status": "no_match_found"}
        other = match.partner_of(username)
        if partner and partner != other:
            raise ValidationError(f"{partner} is not {username}'s partner")

        if self.matches.remove(match.room_name) is None:
            return {"status": "no_match_found"}

        logger.info("%s skipped %s in room %s", username, other, match.room_name)
        self.cooldowns.record(username, other, COOLDOWN_SKIP)

        # the skipper starts over; the partner is still in the live room
        self.enqueue(username, match.use_demo, last_partner=other)
        self.promote(other, match, last_partner=username)
        return {"status": "skipped", "otherUser": other}

    @translate_store_errors
    def handle_disconnection(self, username, room_name, partner=None) -> dict:
        validate_username(username)
        room_name = validate_room_name(room_name)

        match = self.matches.get(room_name)
        if match is None or not match.involves(username):
            logger.info("disconnect of %s from %s: no active match", username, room_name)
            return {"status": "no_match_found"}

        left_behind = match.partner_of(username)
        if partner and partner != left_behind:
            logger.warning(
                "disconnect of %s reported partner %s, recorded partner is %s",
                username,
                partner,
                left_behind,
            )

        if self.matches.remove(room_name) is None:
            return {"status": "no_match_found"}

        logger.info("%s disconnected from %s, %s left behind", username, room_name, left_behind)
        self.queue.dequeue(username)
        self.cooldowns.record(username, left_behind, COOLDOWN_NORMAL)
        self.left_behind.mark(left_behind, room_name, username)

        result = self.promote(left_behind, match, last_partner=username)
        response = {
            "status": "disconnected",
            "leftBehindUser": left_behind,
            "users": list(match.users),
            "newRoomName": room_name,
        }
        if result.matched:
            response["status"] = "disconnected_with_immediate_match"
            response["newRoomName"] = result.room_name
            response["immediateMatch"] = result.to_dict()
        return response

    # ---- queries ----

    @translate_store_errors
    def status(self, username) -> dict:
        validate_username(username)

        match = self.matches.get_by_user(username)
        if match is not None:
            return self._matched_result(match, username).to_dict()

        found = self.queue.position(username)
        if found is None:
            return {"status": IDLE}

        ticket, position, size = found
        data = {
            "status": ticket.state,
            "position": position,
            "queueSize": size,
            "useDemo": ticket.use_demo,
        }
        if ticket.room_name:
            data["roomName"] = ticket.room_name
        return data

    @translate_store_errors
    def current_room(self, username, room_name=None) -> Tuple[str, bool]:
        """The room ``username`` may join right now, with its demo flag."""
        validate_username(username)
        room_name = validate_room_name(room_name, required=False)

        match = self._match_for(username, room_name)
        if match is not None:
            return match.room_name, match.use_demo

        # alone in a live room, waiting for the next partner
        ticket = self.queue.get(username)
        if ticket is not None and ticket.state == IN_CALL and ticket.room_name:
            if room_name in (None, ticket.room_name):
                return ticket.room_name, ticket.use_demo
        raise NotFoundError(f"{username} has no room to join", username=username)


def get_engine() -> MatchingEngine:
    return MatchingEngine(get_redis(), get_matching_settings())
