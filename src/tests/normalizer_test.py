"""Tests for candle normalisation, price-point bucketing and live tick merging."""

import pytest

from market_feed.core.models import Candle
from market_feed.feeds.normalizer import bucketize_points, merge_tick, normalize

from fakes import hourly_candles

# 2024-01-01 00:00:00 UTC, aligned to every timeframe
T0 = 1704067200


def assert_well_formed(candles, seconds):
    for c in candles:
        assert c.close > 0
        assert c.low <= min(c.open, c.close)
        assert max(c.open, c.close) <= c.high
        assert c.ts % seconds == 0
    stamps = [c.ts for c in candles]
    assert stamps == sorted(set(stamps))


class TestNormalizeSameResolution:
    """native == target."""

    def test_sorts_and_dedupes_keeping_last(self):
        raw = [
            Candle(ts=T0 + 3600, open=2, high=2, low=2, close=2),
            Candle(ts=T0, open=1, high=1, low=1, close=1),
            Candle(ts=T0 + 3600, open=3, high=3, low=3, close=3),
        ]
        out = normalize(raw, 3600, 3600)
        assert [c.ts for c in out] == [T0, T0 + 3600]
        assert out[1].close == 3

    def test_drops_non_positive_close(self):
        raw = [
            Candle(ts=T0, open=1, high=1, low=1, close=0),
            Candle(ts=T0 + 60, open=1, high=1, low=1, close=-5),
            Candle(ts=T0 + 120, open=1, high=2, low=1, close=2),
        ]
        out = normalize(raw, 60, 60)
        assert [c.ts for c in out] == [T0 + 120]

    def test_repairs_inconsistent_high_low(self):
        raw = [Candle(ts=T0, open=10, high=9, low=11, close=12)]
        out = normalize(raw, 60, 60)
        assert out[0].high == 12
        assert out[0].low == 9
        assert_well_formed(out, 60)

    def test_zero_open_replaced_by_close(self):
        out = normalize([Candle(ts=T0, open=0, high=0, low=0, close=5)], 60, 60)
        assert (out[0].open, out[0].high, out[0].low) == (5, 5, 5)


class TestNormalizeAggregation:
    """native < target."""

    def test_hourly_candles_into_one_four_hour_bar(self):
        """open=first.open, close=last.close, high=max, low=min, volume=sum."""
        raw = [
            Candle(ts=T0 + 0 * 3600, open=10, high=12, low=9, close=11, volume=1),
            Candle(ts=T0 + 1 * 3600, open=11, high=15, low=10, close=14, volume=2),
            Candle(ts=T0 + 2 * 3600, open=14, high=14, low=7, close=8, volume=3),
            Candle(ts=T0 + 3 * 3600, open=8, high=9, low=8, close=9, volume=4),
        ]
        out = normalize(raw, 3600, 14400)
        assert len(out) == 1
        bar = out[0]
        assert (bar.ts, bar.open, bar.high, bar.low, bar.close, bar.volume) == (T0, 10, 15, 7, 9, 10)

    def test_twenty_four_hours_into_six_bars(self):
        """Closes 100..123, one per hour, give six 4H bars of four candles each."""
        raw = hourly_candles(T0, list(range(100, 124)))
        out = normalize(raw, 3600, 14400)
        assert len(out) == 6
        for i, bar in enumerate(out):
            first, last = 100 + 4 * i, 103 + 4 * i
            assert bar.ts == T0 + i * 14400
            assert (bar.open, bar.close, bar.high, bar.low, bar.volume) == (first, last, last, first, 4)
        assert_well_formed(out, 14400)

    def test_unsorted_input_aggregates_in_time_order(self):
        raw = list(reversed(hourly_candles(T0, [1, 2, 3, 4])))
        bar = normalize(raw, 3600, 14400)[0]
        assert bar.open == 1
        assert bar.close == 4

    def test_partial_bucket_kept(self):
        raw = hourly_candles(T0 + 3 * 3600, [5, 6])
        out = normalize(raw, 3600, 14400)
        assert [c.ts for c in out] == [T0, T0 + 14400]


class TestNormalizeRejects:
    def test_upsampling_unsupported(self):
        assert normalize(hourly_candles(T0, [1, 2]), 3600, 60) == []

    def test_empty_input(self):
        assert normalize([], 60, 60) == []

    def test_all_closes_invalid(self):
        assert normalize([Candle(ts=T0, open=1, high=1, low=1, close=0)], 60, 3600) == []


class TestBucketizePoints:
    def test_price_points_become_ohlc(self):
        points = [(T0 + 10, 5.0), (T0 + 1200, 7.0), (T0 + 2400, 4.0), (T0 + 3000, 6.0), (T0 + 3700, 8.0)]
        out = bucketize_points(points, 3600)
        assert len(out) == 2
        assert (out[0].open, out[0].high, out[0].low, out[0].close) == (5.0, 7.0, 4.0, 6.0)
        assert out[1].ts == T0 + 3600
        assert out[1].close == 8.0

    def test_volumes_matched_by_timestamp(self):
        points = [(T0, 1.0), (T0 + 60, 2.0)]
        volumes = [(T0, 10.0), (T0 + 60, 5.0)]
        out = bucketize_points(points, 3600, volumes=volumes)
        assert out[0].volume == 15.0

    def test_none_prices_skipped(self):
        out = bucketize_points([(T0, None), (T0 + 1, 3.0)], 60)
        assert len(out) == 1
        assert out[0].open == 3.0


class TestMergeTick:
    def test_updates_current_bucket(self):
        candles = [Candle(ts=T0, open=10, high=11, low=9, close=10)]
        merge_tick(candles, 12.5, T0 + 30, 60)
        assert len(candles) == 1
        assert (candles[0].close, candles[0].high, candles[0].low) == (12.5, 12.5, 9)

    def test_opens_new_bucket(self):
        candles = [Candle(ts=T0, open=10, high=11, low=9, close=10)]
        merge_tick(candles, 8.0, T0 + 61, 60)
        assert len(candles) == 2
        assert candles[1].ts == T0 + 60
        assert candles[1].open == candles[1].close == 8.0

    def test_stale_tick_ignored(self):
        candles = [Candle(ts=T0 + 60, open=10, high=11, low=9, close=10)]
        merge_tick(candles, 99.0, T0 + 5, 60)
        assert candles[0].close == 10
        assert len(candles) == 1

    @pytest.mark.parametrize("price", [0, -1, None])
    def test_invalid_price_ignored(self, price):
        candles = []
        assert merge_tick(candles, price, T0, 60) == []

    def test_starts_series_from_empty(self):
        assert merge_tick([], 3.0, T0 + 7, 60)[0].ts == T0
