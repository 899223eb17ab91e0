import pytest

from statcache.stat_cache import FlowStatCache

from helpers import FakeClock, FakeQueryClient


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def expired_events():
    return []


@pytest.fixture
def cache(clock, expired_events):
    return FlowStatCache(
        expire_listener=lambda dpid, t: expired_events.append((dpid, t)),
        clock=clock,
    )


@pytest.fixture
def query_client():
    return FakeQueryClient()
