import os

import pytest

from mirror_utils.config import RelayConfig
from relay.handlers import MappingResolver
from tests.fakes import InMemoryStore


class FakeClock:
    """Settable epoch clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return RelayConfig(
        channel="svc1",
        table_name="lambda-mirror",
        poll_interval=0.0,
        tick_interval=0.0,
        max_workers=4,
    )


@pytest.fixture
def resolver():
    def add(event):
        return {"sum": event["a"] + event["b"]}

    def boom(event):
        raise ValueError("boom")

    return MappingResolver({"F": add, "Boom": boom})


@pytest.fixture
def test_database_url():
    """Real PostgreSQL for integration tests; skipped when not provided."""
    url = os.environ.get("TEST_DATABASE_URL")
    if not url:
        pytest.skip("TEST_DATABASE_URL not set")
    return url
