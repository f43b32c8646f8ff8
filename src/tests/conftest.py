"""Shared test fixtures."""

import pytest

from market_feed.config import Settings
from market_feed.core.models import Venue
from market_feed.core.symbols import resolve

from fakes import FakeAdapter, FakeFeed


@pytest.fixture(autouse=True)
def clear_env(monkeypatch):
    """Keep developer environment variables out of Settings."""
    for name in ("COINGECKO_DEMO_API_KEY", "COINGECKO_API_KEY", "MARKET_FEED_PROXY_PREFIX", "MARKET_FEED_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    yield
    resolve.cache_clear()


@pytest.fixture
def settings():
    """Fast intervals so poller tests finish quickly."""
    return Settings(
        coinbase_poll_interval=0.02,
        phemex_poll_interval=0.02,
        yahoo_poll_interval=0.02,
        coingecko_poll_interval=0.02,
    )


@pytest.fixture
def adapters():
    return {venue: FakeAdapter(venue) for venue in Venue}


@pytest.fixture
def feed():
    return FakeFeed()
