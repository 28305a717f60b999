"""
Shared pytest fixtures: an in-memory engine, a frozen clock and data factories.
"""

import pytest

from shared.store import InMemoryStore
from shared.test_helpers import FrozenClock, TestDataFactory, make_test_config

from access_engine.container import build_engine


@pytest.fixture
def clock():
    """Clock frozen at 2026-01-05 12:00:00 UTC, the start of an hourly window."""
    return FrozenClock()


@pytest.fixture
def config():
    return make_test_config()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def engine(config, store, clock):
    return build_engine(config, store=store, clock=clock)


@pytest.fixture
def repos(engine):
    return engine.repos


@pytest.fixture
def factory(engine, clock):
    return TestDataFactory(engine.repos, clock)
