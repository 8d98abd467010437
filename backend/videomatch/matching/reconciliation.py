# videomatch/matching/reconciliation.py
import logging
from dataclasses import asdict, dataclass, field
from typing import Callable, List, Optional

from videomatch.common.errors import DriftAnomaly
from videomatch.common.redis_client import translate_store_errors
from videomatch.matching.provider import Participant, ProviderError, RoomNotFound, get_provider
from videomatch.matching.records import COOLDOWN_NORMAL, IN_CALL, Match, now_ms
from videomatch.matching.services import MatchingEngine

logger = logging.getLogger(__name__)

KEPT = "kept"
SETTLING = "settling"
DISSOLVED = "dissolved"
PROMOTED = "promoted"
REWRITTEN = "rewritten"
NO_MATCH = "no_match"
BUSY = "busy"
UNREACHABLE = "unreachable"

PARTICIPANT_EVENTS = ("participant_joined", "participant_left")
ROOM_FINISHED = "room_finished"


@dataclass
class RoomReport:
    room_name: str
    action: str
    observed: List[str] = field(default_factory=list)
    anomaly: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SweepReport:
    rooms: List[RoomReport] = field(default_factory=list)
    dropped_tickets: List[str] = field(default_factory=list)

    def count(self, action: str) -> int:
        return sum(1 for report in self.rooms if report.action == action)

    def to_dict(self) -> dict:
        return {
            "rooms": [report.to_dict() for report in self.rooms],
            "droppedTickets": self.dropped_tickets,
        }


def _identities(observed) -> List[str]:
    """Observed identities, earliest joiner first, without duplicates."""
    participants = []
    for item in observed or []:
        if isinstance(item, Participant):
            participants.append(item)
        else:
            participants.append(Participant(identity=str(item)))
    # stable: callers passing bare names keep their order
    participants.sort(key=lambda p: p.joined_at)

    seen = []
    for p in participants:
        if p.identity and p.identity not in seen:
            seen.append(p.identity)
    return seen


class ReconciliationService:
    """Heals MatchTable against what the provider says is actually in each room."""

    def __init__(self, engine: MatchingEngine, provider_factory: Optional[Callable] = None):
        self.engine = engine
        self.conf = engine.conf
        self.provider_factory = provider_factory or get_provider

    def _observe(self, room_name: str, use_demo: bool) -> Optional[List[Participant]]:
        try:
            return self.provider_factory(use_demo).list_participants(room_name)
        except RoomNotFound:
            return []
        except ProviderError as e:
            logger.error("could not list participants of %s: %s", room_name, e)
            return None

    @translate_store_errors
    def reconcile_room(self, room_name: str, observed=None, force: bool = False) -> RoomReport:
        match = self.engine.matches.get(room_name)
        if match is None:
            return RoomReport(room_name, NO_MATCH)

        if observed is None:
            observed = self._observe(room_name, match.use_demo)
            if observed is None:
                return RoomReport(room_name, UNREACHABLE)
        identities = _identities(observed)

        handle = self.engine.locks.try_acquire_room(room_name)
        if handle is None:
            logger.debug("room %s is being reconciled elsewhere", room_name)
            return RoomReport(room_name, BUSY, identities)
        with handle:
            # re-read under the room lock
            match = self.engine.matches.get(room_name)
            if match is None:
                return RoomReport(room_name, NO_MATCH, identities)
            return self._apply(match, identities, force)

    def _apply(self, match: Match, identities: List[str], force: bool) -> RoomReport:
        room_name = match.room_name
        cap = self.conf.MAX_PARTICIPANTS

        if len(identities) > cap:
            extras = identities[cap:]
            logger.warning(
                "room %s holds %d participants (cap %d), dropping %s",
                room_name,
                len(identities),
                cap,
                extras,
            )
            for username in extras:
                self.engine.queue.dequeue(username)
            identities = identities[:cap]

        if len(identities) == 2:
            try:
                self._check_pair(match, identities)
            except DriftAnomaly as e:
                logger.warning("drift: %s", e)
                self._rewrite(match, identities)
                return RoomReport(room_name, REWRITTEN, identities, anomaly=str(e))
            for username in match.users:
                self.engine.queue.dequeue(username)
            return RoomReport(room_name, KEPT, identities)

        age_sec = (now_ms() - match.matched_at) / 1000
        if not force and age_sec < self.conf.MATCH_SETTLE_SEC:
            return RoomReport(room_name, SETTLING, identities)

        if self.engine.matches.remove(room_name) is None:
            return RoomReport(room_name, NO_MATCH, identities)

        if not identities:
            logger.info("room %s is empty, releasing %s and %s", room_name, *match.users)
            self._release(*match.users)
            self._close_room(room_name, match.use_demo)
            return RoomReport(room_name, DISSOLVED, identities)

        alone = identities[0]
        if not match.involves(alone):
            anomaly = DriftAnomaly(room_name, f"stranger {alone} alone in the room", recorded=match.users)
            logger.warning("drift: %s", anomaly)
            self._release(*match.users)
            return RoomReport(room_name, DISSOLVED, identities, anomaly=str(anomaly))

        gone = match.partner_of(alone)
        logger.info("%s is alone in %s, %s is gone", alone, room_name, gone)
        self._release(gone)
        self.engine.cooldowns.record(alone, gone, COOLDOWN_NORMAL)
        self.engine.left_behind.mark(alone, room_name, gone)
        self.engine.promote(alone, match, last_partner=gone)
        return RoomReport(room_name, PROMOTED, identities)

    def _check_pair(self, match: Match, identities: List[str]) -> None:
        if set(identities) != set(match.users):
            raise DriftAnomaly(
                match.room_name,
                f"provider sees {sorted(identities)}, recorded {sorted(match.users)}",
                observed=identities,
                recorded=match.users,
            )

    def _rewrite(self, match: Match, identities: List[str]) -> Match:
        room_name = match.room_name
        a, b = identities

        stranded = []
        for other_room, other in self.engine.matches.all().items():
            if other_room != room_name and (other.involves(a) or other.involves(b)):
                logger.warning("dropping match %s superseded by observed pair in %s", other_room, room_name)
                if self.engine.matches.remove(other_room) is not None:
                    stranded.extend((u, other) for u in other.users if u not in identities)

        healed = Match(room_name=room_name, user1=a, user2=b, matched_at=match.matched_at, use_demo=match.use_demo)
        self.engine.matches.replace(room_name, healed)
        self._release(*(u for u in match.users if u not in identities))
        self.engine.queue.dequeue(a)
        self.engine.queue.dequeue(b)

        # their partner moved into this room; they stay alone in theirs
        for username, other in stranded:
            gone = other.partner_of(username)
            logger.info("%s was left alone in %s when %s moved to %s", username, other.room_name, gone, room_name)
            self.engine.left_behind.mark(username, other.room_name, gone)
            self.engine.promote(username, other, last_partner=gone)
        return healed

    def _close_room(self, room_name: str, use_demo: bool) -> None:
        try:
            self.provider_factory(use_demo).delete_room(room_name)
        except ProviderError as e:
            logger.warning("could not delete empty room %s: %s", room_name, e)

    def _release(self, *usernames) -> None:
        for username in usernames:
            self.engine.queue.dequeue(username)

    @translate_store_errors
    def reconcile_all(self) -> SweepReport:
        report = SweepReport()
        self.engine.sweep()

        for room_name in list(self.engine.matches.all()):
            report.rooms.append(self.reconcile_room(room_name))

        settle_ms = self.conf.MATCH_SETTLE_SEC * 1000
        for ticket in self.engine.queue.list(IN_CALL):
            if not ticket.room_name or now_ms() - ticket.joined_at < settle_ms:
                continue
            observed = self._observe(ticket.room_name, ticket.use_demo)
            if observed is None:
                continue
            if ticket.username not in _identities(observed):
                if self.engine.queue.dequeue(ticket.username):
                    logger.info("%s is no longer in %s, ticket dropped", ticket.username, ticket.room_name)
                    report.dropped_tickets.append(ticket.username)

        if report.rooms or report.dropped_tickets:
            logger.info(
                "reconcile sweep: %d rooms checked, %d dissolved, %d promoted, %d rewritten, %d tickets dropped",
                len(report.rooms),
                report.count(DISSOLVED),
                report.count(PROMOTED),
                report.count(REWRITTEN),
                len(report.dropped_tickets),
            )
        return report

    @translate_store_errors
    def handle_event(self, event: dict) -> bool:
        """Take a provider webhook event; True means "schedule a reconcile of its room"."""
        kind = event.get("event")
        room_name = (event.get("room") or {}).get("name")
        if not room_name:
            return False

        if kind == ROOM_FINISHED:
            self.reconcile_room(room_name, observed=[], force=True)
            return False

        if kind not in PARTICIPANT_EVENTS:
            logger.debug("ignoring provider event %s for %s", kind, room_name)
            return False

        window_ms = int(self.conf.RECONCILE_DEBOUNCE_SEC * 1000)
        return bool(
            self.engine.r.set(
                self.engine.keys.reconcile_debounce(room_name), kind, nx=True, px=max(window_ms, 1)
            )
        )

    @translate_store_errors
    def confirm_disconnect(self, username: str, room_name: str) -> dict:
        """After the grace delay: disconnect ``username`` unless they came back."""
        match = self.engine.matches.get(room_name)
        if match is None or not match.involves(username):
            return {"status": "no_match_found"}

        observed = self._observe(room_name, match.use_demo)
        if observed is not None and username in _identities(observed):
            logger.info("%s reconnected to %s within the grace period", username, room_name)
            return {"status": "reconnected"}
        return self.engine.handle_disconnection(username, room_name)
