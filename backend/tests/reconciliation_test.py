import pytest

from videomatch.matching.provider import Participant, ProviderError, RoomNotFound
from videomatch.matching.reconciliation import (
    BUSY,
    DISSOLVED,
    KEPT,
    NO_MATCH,
    PROMOTED,
    REWRITTEN,
    SETTLING,
    UNREACHABLE,
    ReconciliationService,
)
from videomatch.matching.records import IN_CALL, Ticket, WAITING


@pytest.fixture
def provider(mocker):
    return mocker.Mock()


@pytest.fixture
def service(engine, provider):
    return ReconciliationService(engine, provider_factory=lambda use_demo: provider)


# ---- scenario D ----


def test_empty_room_dissolves_and_releases_both(engine, service, old_match):
    match = old_match("R")
    # lingering tickets from a half-finished request
    engine.queue.enqueue(Ticket(username="alice"))
    engine.queue.enqueue(Ticket(username="bob", state=IN_CALL, room_name="R"))

    report = service.reconcile_room("R", observed=[])

    assert report.action == DISSOLVED
    assert engine.matches.get(match.room_name) is None
    assert engine.queue.get("alice") is None
    assert engine.queue.get("bob") is None


def test_empty_room_is_deleted_on_the_provider(service, provider, old_match):
    old_match("R")

    service.reconcile_room("R", observed=[])

    provider.delete_room.assert_called_once_with("R")


def test_room_deletion_failure_still_dissolves(engine, service, provider, old_match):
    old_match("R")
    provider.delete_room.side_effect = ProviderError("timeout")

    assert service.reconcile_room("R", observed=[]).action == DISSOLVED
    assert engine.matches.get("R") is None


def test_unknown_room_counts_as_empty(service, provider, old_match):
    old_match("R")
    provider.list_participants.side_effect = RoomNotFound("no room")

    assert service.reconcile_room("R").action == DISSOLVED
    provider.list_participants.assert_called_once_with("R")


def test_provider_failure_leaves_room_alone(engine, service, provider, old_match):
    old_match("R")
    provider.list_participants.side_effect = ProviderError("timeout")

    assert service.reconcile_room("R").action == UNREACHABLE
    assert engine.matches.get("R") is not None


def test_fresh_match_is_given_time_to_connect(engine, service, matched_pair):
    report = service.reconcile_room(matched_pair.room_name, observed=[])

    assert report.action == SETTLING
    assert engine.matches.get(matched_pair.room_name) is not None


def test_force_skips_the_settle_window(engine, service, matched_pair):
    report = service.reconcile_room(matched_pair.room_name, observed=[], force=True)

    assert report.action == DISSOLVED
    assert engine.matches.count() == 0


def test_one_participant_is_promoted(engine, service, old_match):
    old_match("R")

    report = service.reconcile_room("R", observed=["alice"])

    assert report.action == PROMOTED
    assert engine.matches.get("R") is None
    alice = engine.queue.get("alice")
    assert alice.state == IN_CALL
    assert alice.room_name == "R"
    assert engine.queue.get("bob") is None
    assert engine.cooldowns.remaining("alice", "bob") > 0
    assert engine.left_behind.status("alice")["disconnectedFrom"] == "bob"


def test_promoted_participant_is_matched_right_away(engine, service, old_match):
    old_match("R")
    engine.enqueue("carol")

    service.reconcile_room("R", observed=["bob"])

    match = engine.matches.get("R")
    assert set(match.users) == {"bob", "carol"}


def test_stranger_alone_in_room(engine, service, old_match):
    old_match("R")

    report = service.reconcile_room("R", observed=["mallory"])

    assert report.action == DISSOLVED
    assert "mallory" in report.anomaly
    assert engine.queue.usernames() == []


def test_matching_pair_is_kept(engine, service, old_match):
    old_match("R")
    engine.queue.enqueue(Ticket(username="bob"))

    report = service.reconcile_room("R", observed=["bob", "alice"])

    assert report.action == KEPT
    assert engine.matches.get("R") is not None
    assert engine.queue.get("bob") is None


def test_different_pair_rewrites_the_match(engine, service, old_match):
    old_match("R", "alice", "bob")
    old_match("R2", "carol", "dave")

    report = service.reconcile_room("R", observed=["alice", "carol"])

    assert report.action == REWRITTEN
    assert report.anomaly
    assert set(engine.matches.get("R").users) == {"alice", "carol"}
    assert engine.matches.get("R2") is None

    # carol left dave for alice: dave stays in R2 and waits for a new partner
    dave = engine.queue.get("dave")
    assert dave.state == IN_CALL
    assert dave.room_name == "R2"
    assert dave.last_match.partner == "carol"
    assert engine.left_behind.status("dave") == {
        "status": "left_behind",
        "previousRoom": "R2",
        "disconnectedFrom": "carol",
    }
    assert engine.queue.get("bob") is None


def test_over_capacity_keeps_earliest_joiners(engine, service, old_match):
    old_match("R")
    engine.queue.enqueue(Ticket(username="eve"))
    observed = [
        Participant("eve", joined_at=300),
        Participant("bob", joined_at=200),
        Participant("alice", joined_at=100),
    ]

    report = service.reconcile_room("R", observed=observed)

    assert report.action == KEPT
    assert report.observed == ["alice", "bob"]
    assert engine.queue.get("eve") is None


def test_room_lock_prevents_double_healing(engine, service, old_match):
    old_match("R")
    held = engine.locks.try_acquire_room("R")

    assert service.reconcile_room("R", observed=[]).action == BUSY
    held.release()
    assert service.reconcile_room("R", observed=[]).action == DISSOLVED
    assert service.reconcile_room("R", observed=[]).action == NO_MATCH


def test_reconcile_all(engine, service, provider, old_match, stale_ticket):
    old_match("R1", "alice", "bob")
    old_match("R2", "carol", "dave")
    stale_ticket("erin", 60, state=IN_CALL, room_name="R3")
    stale_ticket("frank", 60)

    rooms = {"R1": ["alice", "bob"], "R2": [], "R3": []}
    provider.list_participants.side_effect = lambda name: [Participant(u) for u in rooms[name]]

    report = service.reconcile_all()

    assert sorted((r.room_name, r.action) for r in report.rooms) == [("R1", KEPT), ("R2", DISSOLVED)]
    assert report.dropped_tickets == ["erin"]
    assert engine.queue.get("frank").state == WAITING


def test_in_call_ticket_of_present_user_is_kept(engine, service, provider, stale_ticket):
    stale_ticket("erin", 60, state=IN_CALL, room_name="R3")
    provider.list_participants.return_value = [Participant("erin")]

    assert service.reconcile_all().dropped_tickets == []
    assert engine.queue.get("erin") is not None


# ---- provider events ----


def test_participant_events_are_debounced(service):
    event = {"event": "participant_left", "room": {"name": "R"}, "participant": {"identity": "bob"}}

    assert service.handle_event(event) is True
    assert service.handle_event(event) is False
    assert service.handle_event({**event, "room": {"name": "R2"}}) is True


def test_room_finished_dissolves_immediately(engine, service, matched_pair):
    assert service.handle_event({"event": "room_finished", "room": {"name": matched_pair.room_name}}) is False
    assert engine.matches.count() == 0


def test_other_events_are_ignored(service):
    assert service.handle_event({"event": "track_published", "room": {"name": "R"}}) is False
    assert service.handle_event({"event": "participant_joined"}) is False


def test_confirm_disconnect(engine, service, provider, matched_pair):
    room = matched_pair.room_name
    provider.list_participants.return_value = [Participant("alice"), Participant("bob")]

    assert service.confirm_disconnect("bob", room) == {"status": "reconnected"}

    provider.list_participants.return_value = [Participant("alice")]
    result = service.confirm_disconnect("bob", room)
    assert result["status"] == "disconnected"
    assert result["leftBehindUser"] == "alice"

    assert service.confirm_disconnect("bob", room) == {"status": "no_match_found"}
