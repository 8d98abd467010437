import fakeredis
import pytest

from videomatch.matching.conf import MatchingSettings
from videomatch.matching.records import Match, Ticket, now_ms
from videomatch.matching.services import MatchingEngine


@pytest.fixture
def redis_server():
    """One in-memory Redis per test; share it between clients for concurrency tests."""
    return fakeredis.FakeServer()


@pytest.fixture
def r(redis_server):
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def conf():
    return MatchingSettings(KEY_PREFIX="test", RESCAN_BACKOFF_SEC=0.001)


@pytest.fixture
def engine(r, conf):
    return MatchingEngine(r, conf)


@pytest.fixture(autouse=True)
def shared_redis(mocker, r, conf):
    """Code that builds its own engine gets the test store too."""
    mocker.patch("videomatch.common.redis_client.get_redis", return_value=r)
    mocker.patch("videomatch.matching.services.get_redis", return_value=r)
    mocker.patch("videomatch.matching.services.get_matching_settings", return_value=conf)


@pytest.fixture(autouse=True)
def rooms(mocker):
    """The room provider the engine talks to; no test reaches a real server."""
    provider = mocker.Mock()
    mocker.patch("videomatch.matching.services.get_provider", return_value=provider)
    return provider


@pytest.fixture
def matched_pair(engine):
    """alice and bob matched by the engine; returns the Match."""
    engine.enqueue("alice")
    engine.enqueue("bob")
    return engine.matches.get_by_user("alice")


@pytest.fixture
def old_match(engine):
    """Store a match older than the settle window, bypassing the engine."""

    def make(room_name="room-old", user1="alice", user2="bob", age_sec=120, use_demo=False):
        match = Match(
            room_name=room_name,
            user1=user1,
            user2=user2,
            matched_at=now_ms() - age_sec * 1000,
            use_demo=use_demo,
        )
        assert engine.matches.create(match)
        return match

    return make


@pytest.fixture
def stale_ticket(engine):
    def make(username, age_sec, **kwargs):
        ticket = Ticket(username=username, joined_at=now_ms() - age_sec * 1000, **kwargs)
        return engine.queue.enqueue(ticket)

    return make
