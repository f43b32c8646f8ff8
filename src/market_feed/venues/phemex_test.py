"""Tests for the Phemex adapter: price-field priority, scaling and kline probing."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch

import ccxt
import pytest

from market_feed.core.models import Timeframe, Venue
from market_feed.venues.phemex import KLINE_ENDPOINTS, PhemexAdapter, heuristic_descale

BASE = "https://api.phemex.com"
T0 = 1704067200


def ticker(body):
    return {"code": 0, "msg": "", "result": body}


class TestQuote:
    def test_rp_fields_preferred(self, session, make_response):
        session.get.return_value = make_response(ticker({
            "closeRp": "66000", "lastPrice": "1", "closeEp": 5,
            "openRp": "60000", "highRp": "67000", "lowRp": "59000", "volumeRq": "1200",
        }))
        tick = PhemexAdapter(session=session, price_scales={}).fetch_quote("BTCUSDT")
        assert tick.price == 66000.0
        assert tick.change24h == pytest.approx(10.0)
        assert (tick.high24h, tick.low24h, tick.volume24h) == (67000.0, 59000.0, 1200.0)
        assert tick.source == Venue.PHEMEX
        assert session.get.call_args.args[0] == f"{BASE}/md/v2/ticker/24hr"
        assert session.get.call_args.kwargs["params"] == {"symbol": "BTCUSDT"}

    def test_plain_fields_next(self, session, make_response):
        session.get.return_value = make_response(ticker({"markPriceRp": "", "lastPrice": "3.5"}))
        tick = PhemexAdapter(session=session, price_scales={}).fetch_quote("ZROUSDT")
        assert tick.price == 3.5
        assert tick.change24h == 0.0

    def test_scaled_field_uses_instrument_scale(self, session, make_response):
        session.get.return_value = make_response(ticker({"closeEp": 650000000}))
        adapter = PhemexAdapter(session=session, price_scales={"BTCUSD": 4})
        assert adapter.fetch_quote("BTCUSD").price == 65000.0

    def test_scaled_field_heuristic_without_metadata(self, session, make_response):
        session.get.return_value = make_response(ticker({"lastPriceEp": 6500000000000}))
        adapter = PhemexAdapter(session=session, price_scales={})
        assert adapter.fetch_quote("BTCUSD").price == 65000.0

    def test_heuristic(self):
        assert heuristic_descale(650000000) == 65000.0
        assert heuristic_descale(6.5e12) == 65000.0

    def test_data_list_payload(self, session, make_response):
        session.get.return_value = make_response({"code": 0, "data": [{"lastPriceRp": "1.25"}]})
        assert PhemexAdapter(session=session, price_scales={}).fetch_quote("CCUSDT").price == 1.25

    def test_error_code_is_absent(self, session, make_response):
        session.get.return_value = make_response({"code": 6001, "msg": "invalid symbol", "result": None})
        adapter = PhemexAdapter(session=session, price_scales={})
        assert adapter.fetch_quote("NOPEUSDT") is None
        assert adapter.fetch_quote("NOPEUSDT") is None
        assert session.get.call_count == 1

    def test_no_price_field(self, session, make_response):
        session.get.return_value = make_response(ticker({"openRp": "10"}))
        assert PhemexAdapter(session=session, price_scales={}).fetch_quote("BTCUSDT") is None

    @pytest.mark.parametrize("payload", [[1, 2], {"code": 0, "result": ["BTCUSDT"]}, ticker({"closeRp": {"v": 1}})])
    def test_malformed_payload(self, session, make_response, payload):
        session.get.return_value = make_response(payload)
        assert PhemexAdapter(session=session, price_scales={}).fetch_quote("BTCUSDT") is None


class TestPriceScales:
    def test_loaded_from_ccxt_once(self):
        exchange = MagicMock()
        exchange.load_markets.return_value = {
            "BTC/USD:BTC": {"id": "BTCUSD", "info": {"priceScale": 4}},
            "ETH/USDT:USDT": {"id": "ETHUSDT", "info": {"priceScale": 0}},
            "XYZ/USDT": {"id": "XYZUSDT", "info": {}},
        }
        with patch("market_feed.venues.phemex.ccxt.phemex", return_value=exchange) as factory:
            adapter = PhemexAdapter(session=MagicMock())
            assert adapter.price_scale("BTCUSD") == 4
            assert adapter.price_scale("XYZUSDT") is None
            assert adapter.descale("BTCUSD", 650000000) == 65000.0
        assert factory.call_count == 1
        assert exchange.load_markets.call_count == 1

    def test_concurrent_first_use_loads_once(self):
        exchange = MagicMock()

        def slow_markets():
            time.sleep(0.05)
            return {"BTC/USD:BTC": {"id": "BTCUSD", "info": {"priceScale": 4}}}

        exchange.load_markets.side_effect = slow_markets
        adapter = PhemexAdapter(session=MagicMock())
        barrier = threading.Barrier(8)

        def first_use():
            barrier.wait()
            return adapter.price_scale("BTCUSD")

        with patch("market_feed.venues.phemex.ccxt.phemex", return_value=exchange):
            with ThreadPoolExecutor(max_workers=8) as pool:
                scales = list(pool.map(lambda _: first_use(), range(8)))
        assert scales == [4] * 8
        assert exchange.load_markets.call_count == 1

    def test_metadata_failure_falls_back_to_heuristic(self):
        exchange = MagicMock()
        exchange.load_markets.side_effect = ccxt.NetworkError("unreachable")
        with patch("market_feed.venues.phemex.ccxt.phemex", return_value=exchange):
            adapter = PhemexAdapter(session=MagicMock())
            assert adapter.descale("BTCUSD", 650000000) == 65000.0
            assert adapter.price_scale("BTCUSD") is None


class TestCandles:
    def kline_session(self, make_response, working_path, payload):
        calls = []

        def get(url, params=None, headers=None, timeout=None):
            calls.append((url, params))
            if url == BASE + working_path:
                return make_response(payload)
            return make_response({"code": 404}, status=404)

        session = MagicMock()
        session.get.side_effect = get
        return session, calls

    def test_probes_until_an_endpoint_answers_and_remembers_it(self, make_response):
        working = KLINE_ENDPOINTS[2]
        rows = [[T0 + i * 3600, 3600, 0, 10 + i, 12 + i, 9 + i, 11 + i, 5] for i in range(3)]
        session, calls = self.kline_session(make_response, working, {"code": 0, "data": {"rows": rows}})
        adapter = PhemexAdapter(session=session, price_scales={})

        candles = adapter.fetch_candles("BTCUSDT", "1H", T0, T0 + 3 * 3600)
        assert [c.close for c in candles] == [11, 12, 13]
        assert (candles[0].open, candles[0].high, candles[0].low, candles[0].volume) == (10, 12, 9, 5)
        assert [url for url, _ in calls] == [BASE + p for p in KLINE_ENDPOINTS[:3]]
        assert calls[0][1] == {"symbol": "BTCUSDT", "resolution": 3600, "from": T0, "to": T0 + 3 * 3600}

        calls.clear()
        adapter.fetch_candles("BTCUSDT", "1H", T0, T0 + 3 * 3600)
        assert calls[0][0] == BASE + working

    def test_object_rows(self, make_response):
        rows = [{"timestamp": T0, "openRp": "1", "highRp": "2", "lowRp": "0.5", "closeRp": "1.5", "volumeRq": "10"}]
        session, _ = self.kline_session(make_response, KLINE_ENDPOINTS[0], {"code": 0, "data": {"rows": rows}})
        candle = PhemexAdapter(session=session, price_scales={}).fetch_candles("BTCUSDT", "1H", T0, T0)[0]
        assert (candle.open, candle.high, candle.low, candle.close, candle.volume) == (1, 2, 0.5, 1.5, 10)

    def test_four_hour_requested_natively(self, make_response):
        rows = [[T0, 14400, 0, 1, 2, 1, 2, 1]]
        session, calls = self.kline_session(make_response, KLINE_ENDPOINTS[0], {"code": 0, "data": {"rows": rows}})
        candles = PhemexAdapter(session=session, price_scales={}).fetch_candles("BTCUSDT", Timeframe.H4, T0, T0)
        assert calls[0][1]["resolution"] == 14400
        assert [c.ts for c in candles] == [T0]

    def test_error_code_rejected(self, make_response):
        session, calls = self.kline_session(
            make_response, KLINE_ENDPOINTS[0], {"code": 30000, "data": {"rows": [[T0, 60, 0, 1, 1, 1, 1, 1]]}}
        )
        assert PhemexAdapter(session=session, price_scales={}).fetch_candles("BTCUSDT", "1m", T0, T0) == []
        assert len(calls) == len(KLINE_ENDPOINTS)

    def test_every_endpoint_failing_gives_empty(self, make_response):
        session, calls = self.kline_session(make_response, "/nowhere", {})
        adapter = PhemexAdapter(session=session, price_scales={})
        assert adapter.fetch_candles("BTCUSDT", "1D", T0, T0 + 86400) == []
        assert adapter.fetch_candles("BTCUSDT", "1D", T0, T0 + 86400) == []

    def test_malformed_rows_skipped(self, make_response):
        rows = [
            [None, 3600, 0, 1, 1, 1, 1, 1],
            [T0, 3600, 0, None, None, None, None, None],
            "junk",
            [T0 + 3600, 3600, 0, 10, 12, 9, 11, 5],
        ]
        session, _ = self.kline_session(make_response, KLINE_ENDPOINTS[0], {"code": 0, "data": {"rows": rows}})
        candles = PhemexAdapter(session=session, price_scales={}).fetch_candles("BTCUSDT", "1H", T0, T0 + 3600)
        assert [(c.ts, c.close) for c in candles] == [(T0 + 3600, 11)]
