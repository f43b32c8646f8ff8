"""Live market data aggregation across Coinbase, Phemex, Yahoo Finance and CoinGecko."""

from market_feed.aggregators.history import HistoryAggregator, fetch_candles
from market_feed.aggregators.live import LiveAggregator, WatchHandle, watch_tickers
from market_feed.config import Settings
from market_feed.core.models import (
    AssetType,
    Candle,
    CandleRequest,
    CandleSeries,
    FeedStatus,
    Holding,
    RoutingPlan,
    Tick,
    Timeframe,
    Venue,
)
from market_feed.core.symbols import resolve as resolve_symbol

__version__ = "0.1.0"
