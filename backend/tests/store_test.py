import json

import pytest

from videomatch.matching.records import (
    IN_CALL,
    WAITING,
    LeftBehindRecord,
    Match,
    RecordError,
    Ticket,
    now_ms,
    pair_key,
)
from videomatch.matching.redis_store import MatchTable, QueueStore, StoreKeys


@pytest.fixture
def keys():
    return StoreKeys("test")


@pytest.fixture
def queue(r, keys):
    return QueueStore(r, keys)


@pytest.fixture
def matches(r, keys):
    return MatchTable(r, keys)


def test_pair_key_is_symmetric():
    assert pair_key("bob", "alice") == pair_key("alice", "bob") == "alice:bob"


def test_ticket_json_uses_camel_case():
    ticket = Ticket(username="alice", joined_at=1000, state=IN_CALL, room_name="R")
    data = json.loads(ticket.dumps())
    assert data == {
        "username": "alice",
        "joinedAt": 1000,
        "state": "in_call",
        "useDemo": False,
        "roomName": "R",
    }
    assert Ticket.loads(ticket.dumps()) == ticket


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[]",
        json.dumps({"username": "alice"}),
        json.dumps({"username": "alice", "joinedAt": -5}),
        json.dumps({"username": "alice", "joinedAt": "yesterday"}),
        json.dumps({"username": "", "joinedAt": 5}),
        json.dumps({"username": "alice", "joinedAt": 5, "state": "dancing"}),
    ],
)
def test_corrupt_ticket_decodes_to_none(raw):
    assert Ticket.loads(raw) is None


def test_match_rejects_identical_users():
    with pytest.raises(RecordError):
        Match(room_name="R", user1="alice", user2="alice")
    assert Match.loads(json.dumps({"roomName": "R", "user1": "a", "user2": "a", "matchedAt": 1})) is None


def test_left_behind_record_round_trip():
    record = LeftBehindRecord(username="alice", previous_room="R", disconnected_from="bob")
    assert LeftBehindRecord.loads(record.dumps()) == record


def test_enqueue_is_idempotent_upsert(queue, r, keys):
    queue.enqueue(Ticket(username="alice", joined_at=1))
    queue.enqueue(Ticket(username="alice", joined_at=2))

    assert r.hlen(keys.tickets) == 1
    assert r.zscore(keys.queue(WAITING), "alice") == 2
    assert queue.get("alice").joined_at == 2


def test_enqueue_moves_between_classes(queue, r, keys):
    queue.enqueue(Ticket(username="alice"))
    queue.enqueue(Ticket(username="alice", state=IN_CALL, room_name="R"))

    assert r.zscore(keys.queue(WAITING), "alice") is None
    assert r.zscore(keys.queue(IN_CALL), "alice") is not None
    assert queue.count() == {WAITING: 0, IN_CALL: 1}


def test_dequeue_claims_once(queue):
    queue.enqueue(Ticket(username="alice"))
    assert queue.dequeue("alice") is True
    assert queue.dequeue("alice") is False
    assert queue.get("alice") is None


def test_list_is_oldest_first(queue):
    now = now_ms()
    queue.enqueue(Ticket(username="carol", joined_at=now))
    queue.enqueue(Ticket(username="alice", joined_at=now - 2000))
    queue.enqueue(Ticket(username="bob", joined_at=now - 1000))

    assert [t.username for t in queue.list(WAITING)] == ["alice", "bob", "carol"]


def test_list_drops_members_without_a_valid_body(queue, r, keys):
    queue.enqueue(Ticket(username="alice"))
    r.zadd(keys.queue(WAITING), {"ghost": 1})
    queue.enqueue(Ticket(username="bob"))
    r.hset(keys.tickets, "bob", "{broken")

    assert [t.username for t in queue.list(WAITING)] == ["alice"]
    assert r.zscore(keys.queue(WAITING), "ghost") is None
    assert r.hget(keys.tickets, "bob") is None


def test_position_within_class(queue):
    now = now_ms()
    queue.enqueue(Ticket(username="alice", joined_at=now - 10))
    queue.enqueue(Ticket(username="bob", joined_at=now))
    queue.enqueue(Ticket(username="carol", state=IN_CALL, room_name="R"))

    ticket, position, size = queue.position("bob")
    assert ticket.username == "bob"
    assert (position, size) == (2, 2)
    assert queue.position("carol")[1:] == (1, 1)
    assert queue.position("nobody") is None


def test_sweep_removes_only_stale_tickets(queue):
    queue.enqueue(Ticket(username="old", joined_at=now_ms() - 600 * 1000))
    queue.enqueue(Ticket(username="fresh"))

    swept = queue.sweep(300)

    assert [t.username for t in swept] == ["old"]
    assert queue.get("old") is None
    assert queue.get("fresh") is not None


def test_orphans_and_clear(queue, r, keys):
    queue.enqueue(Ticket(username="alice"))
    r.zadd(keys.queue(IN_CALL), {"ghost": 1})

    assert queue.orphans() == ["ghost"]
    assert queue.clear() == 1
    assert queue.count() == {WAITING: 0, IN_CALL: 0}


def test_create_rejects_taken_room_or_user(matches):
    assert matches.create(Match(room_name="R1", user1="alice", user2="bob"))

    assert not matches.create(Match(room_name="R1", user1="carol", user2="dave"))
    assert not matches.create(Match(room_name="R2", user1="carol", user2="bob"))
    assert matches.create(Match(room_name="R2", user1="carol", user2="dave"))
    assert matches.count() == 2


def test_get_by_user(matches):
    matches.create(Match(room_name="R1", user1="alice", user2="bob"))

    assert matches.get_by_user("bob").room_name == "R1"
    assert matches.get_by_user("bob").partner_of("bob") == "alice"
    assert matches.get_by_user("carol") is None


def test_remove_returns_match_once(matches):
    matches.create(Match(room_name="R1", user1="alice", user2="bob"))

    removed = matches.remove("R1")
    assert removed.users == ("alice", "bob")
    assert matches.remove("R1") is None


def test_corrupt_match_is_dropped(matches, r, keys):
    r.hset(keys.matches, "R1", '{"roomName": "R1"}')
    assert matches.get("R1") is None
    assert not r.hexists(keys.matches, "R1")


def test_match_sweep(matches):
    matches.create(Match(room_name="old", user1="a", user2="b", matched_at=now_ms() - 3600 * 1000))
    matches.create(Match(room_name="new", user1="c", user2="d"))

    swept = matches.sweep(600)

    assert [m.room_name for m in swept] == ["old"]
    assert list(matches.all()) == ["new"]


def test_minted_room_names_are_unique(matches, r, keys):
    names = {matches.mint_room_name() for _ in range(20)}

    assert len(names) == 20
    assert all(name.startswith("match-") for name in names)
    assert r.scard(keys.used_rooms) == 20
    assert r.ttl(keys.used_rooms) > 0
