"""Tests for the History Aggregator: failover, default windows, dedupe and bounded fan-out."""

import asyncio

import pytest

from market_feed.aggregators.history import HistoryAggregator, fetch_candles
from market_feed.core.models import CandleRequest, Timeframe, Venue

from fakes import hourly_candles

NOW = 1704067200 + 30 * 86400


def make_aggregator(adapters, settings):
    return HistoryAggregator(adapters, settings, clock=lambda: NOW)


class TestFetchAll:
    def test_primary_wins(self, adapters, settings):
        adapters[Venue.COINBASE].candles["BTC-USD"] = hourly_candles(NOW - 7200, [1, 2])
        result = make_aggregator(adapters, settings).fetch_all([{"key": "BTC", "type": "crypto_spot"}], "1H")
        series = result["BTC"]
        assert series.source == Venue.COINBASE
        assert series.timeframe == Timeframe.H1
        assert [c.close for c in series.candles] == [1, 2]
        assert adapters[Venue.PHEMEX].candle_calls == []

    def test_empty_primary_falls_through_in_order(self, adapters, settings):
        adapters[Venue.COINGECKO].candles["bitcoin"] = hourly_candles(NOW - 3600, [7])
        result = make_aggregator(adapters, settings).fetch_all([CandleRequest("BTC")], Timeframe.H1)
        assert result["BTC"].source == Venue.COINGECKO
        assert len(adapters[Venue.COINBASE].candle_calls) == 1
        assert len(adapters[Venue.PHEMEX].candle_calls) == 1

    def test_unknown_symbol_gives_empty_mapping(self, adapters, settings):
        """No venue knows ZZZ: the result is empty and nothing raises."""
        requests = [{"key": "ZZZ", "type": "crypto_spot", "since": NOW - 7 * 86400}]
        assert make_aggregator(adapters, settings).fetch_all(requests, "1H") == {}

    def test_venue_hint_tried_first(self, adapters, settings):
        adapters[Venue.COINBASE].candles["SOL-USD"] = hourly_candles(NOW - 3600, [1])
        adapters[Venue.PHEMEX].candles["SOLUSDT"] = hourly_candles(NOW - 3600, [2])
        requests = [{"key": "SOL", "type": "crypto_spot", "venue_hint": "phemex"}]
        result = make_aggregator(adapters, settings).fetch_all(requests, "1H")
        assert result["SOL"].source == Venue.PHEMEX
        assert adapters[Venue.COINBASE].candle_calls == []

    def test_default_window_per_timeframe(self, adapters, settings):
        make_aggregator(adapters, settings).fetch_all(["BTC"], "4H")
        native_id, timeframe, start, end = adapters[Venue.COINBASE].candle_calls[0]
        assert native_id == "BTC-USD"
        assert timeframe == Timeframe.H4
        assert end == NOW
        assert start == NOW - 540 * 14400

    def test_duplicate_keys_fetch_once_with_widest_window(self, adapters, settings):
        requests = [
            {"key": "BTC", "since": NOW - 3600},
            {"key": "BTC-USD", "since": NOW - 7200},
            {"key": "BITCOIN", "since": NOW - 1800},
        ]
        make_aggregator(adapters, settings).fetch_all(requests, "1H")
        calls = adapters[Venue.COINBASE].candle_calls
        assert len(calls) == 1
        assert calls[0][2] == NOW - 7200

    def test_unresolvable_and_malformed_requests_skipped(self, adapters, settings):
        adapters[Venue.YAHOO].candles["MSTR"] = hourly_candles(NOW - 3600, [350])
        requests = ["", {"key": "MSTR", "type": "equity"}, {"key": "BTC", "venue_hint": "kraken"}, 42]
        result = make_aggregator(adapters, settings).fetch_all(requests, "1H")
        assert list(result) == ["MSTR"]

    def test_adapter_exception_treated_as_empty(self, adapters, settings):
        def boom(*args, **kwargs):
            raise RuntimeError("adapter bug")

        adapters[Venue.COINBASE].fetch_candles = boom
        adapters[Venue.PHEMEX].candles["ETHUSDT"] = hourly_candles(NOW - 3600, [3000])
        result = make_aggregator(adapters, settings).fetch_all(["ETH"], "1H")
        assert result["ETH"].source == Venue.PHEMEX

    def test_unknown_timeframe_raises(self, adapters, settings):
        with pytest.raises(ValueError):
            make_aggregator(adapters, settings).fetch_all(["BTC"], "2H")

    def test_fan_out_bounded_by_workers(self, adapters, settings):
        settings.history_workers = 2
        coinbase = adapters[Venue.COINBASE]
        coinbase.delay = 0.05
        keys = ["BTC", "ETH", "SOL", "DOGE", "XRP", "ADA"]
        for key in keys:
            coinbase.candles[f"{key}-USD"] = hourly_candles(NOW - 3600, [1])

        result = make_aggregator(adapters, settings).fetch_all(keys, "1H")
        assert set(result) == set(keys)
        assert coinbase.max_in_flight <= 2


class TestAsyncAndModuleEntryPoints:
    def test_afetch_all(self, adapters, settings):
        adapters[Venue.COINBASE].candles["BTC-USD"] = hourly_candles(NOW - 3600, [5])
        aggregator = make_aggregator(adapters, settings)
        result = asyncio.run(aggregator.afetch_all(["BTC"], "1H"))
        assert result["BTC"].candles[0].close == 5

    def test_fetch_candles_function(self, adapters, settings):
        adapters[Venue.YAHOO].candles["SPY"] = hourly_candles(NOW - 3600, [480])
        result = fetch_candles([{"key": "SPY", "type": "equity"}], "1H", settings=settings, adapters=adapters)
        assert result["SPY"].source == Venue.YAHOO
