from __future__ import annotations

import logging
from typing import Optional

from market_feed.config import Settings
from market_feed.core.models import Venue
from market_feed.helpers.rate_limiter import TokenBucketLimiter
from market_feed.venues.base import VenueAdapter
from market_feed.venues.coinbase import CoinbaseAdapter
from market_feed.venues.coingecko import CoinGeckoAdapter
from market_feed.venues.phemex import PhemexAdapter
from market_feed.venues.yahoo import YahooAdapter


def build_adapters(
    settings: Optional[Settings] = None,
    logger: Optional[logging.Logger] = None,
) -> dict[Venue, VenueAdapter]:
    """One REST adapter per venue, wired from *settings*."""
    settings = settings or Settings.from_env()
    common = {"timeout": settings.request_timeout, "logger": logger}
    return {
        Venue.COINBASE: CoinbaseAdapter(settings.rest_base("coinbase"), **common),
        Venue.PHEMEX: PhemexAdapter(settings.rest_base("phemex"), **common),
        Venue.YAHOO: YahooAdapter(settings.rest_base("yahoo"), **common),
        Venue.COINGECKO: CoinGeckoAdapter(
            settings.rest_base("coingecko"),
            api_key=settings.coingecko_api_key,
            limiter=TokenBucketLimiter(settings.coingecko_rate_per_minute),
            **common,
        ),
    }
