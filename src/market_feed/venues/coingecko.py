"""
CoinGecko adapter, the venue of last resort for crypto.

    GET /simple/price?ids=&vs_currencies=usd&include_24hr_change=true
    GET /coins/{id}/market_chart?vs_currency=usd&days=
    GET /coins/{id}/ohlc?vs_currency=usd&days=

The free tier allows roughly 30 requests per minute, so every call made by
one adapter instance first takes a token from a shared bucket.
"""

from __future__ import annotations

import math
import time
from typing import Optional

from market_feed.core.errors import ParseError, UpstreamAbsent
from market_feed.core.models import Candle, Tick, Timeframe, Venue
from market_feed.feeds.normalizer import bucketize_points, normalize
from market_feed.helpers.rate_limiter import TokenBucketLimiter
from market_feed.venues.base import VenueAdapter, to_float

_BASE_URL = "https://api.coingecko.com/api/v3"

# Day counts the /ohlc endpoint accepts.
OHLC_DAYS = (1, 7, 14, 30, 90, 180, 365)
MAX_CHART_DAYS = 365


def _points(rows) -> list[tuple[float, float]]:
    """``[[ms, value], ...]`` as ``(seconds, value)`` pairs, skipping malformed entries."""
    points = []
    for row in rows if isinstance(rows, list) else []:
        if not isinstance(row, (list, tuple)) or len(row) < 2:
            continue
        ms, value = to_float(row[0]), to_float(row[1])
        if ms is not None and value is not None:
            points.append((ms / 1000, value))
    return points


def _ohlc_days(days: int) -> int:
    for allowed in OHLC_DAYS:
        if days <= allowed:
            return allowed
    return OHLC_DAYS[-1]


class CoinGeckoAdapter(VenueAdapter):
    """
    Parameters
    ----------
    api_key : str
        Demo API key sent as ``x-cg-demo-api-key``; empty for anonymous use.
    limiter : TokenBucketLimiter, optional
        Admission control shared by all calls; defaults to 30 req/min.
    """

    venue = Venue.COINGECKO

    def __init__(
        self,
        base_url: str = _BASE_URL,
        api_key: str = "",
        limiter: Optional[TokenBucketLimiter] = None,
        **kwargs,
    ) -> None:
        super().__init__(base_url, **kwargs)
        self.api_key = api_key
        self.limiter = limiter or TokenBucketLimiter(rate_per_minute=30)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key
        return headers

    def _get_json(self, path: str, params: Optional[dict] = None):
        self.limiter.wait()
        return super()._get_json(path, params=params)

    def _quote(self, native_id: str) -> Optional[Tick]:
        payload = self._get_json(
            "/simple/price",
            params={"ids": native_id, "vs_currencies": "usd", "include_24hr_change": "true"},
        )
        if not isinstance(payload, dict):
            raise ParseError(f"unexpected simple/price payload for {native_id}")
        entry = payload.get(native_id)
        if not isinstance(entry, dict) or not entry:
            raise UpstreamAbsent(f"no simple/price entry for {native_id}")
        price = to_float(entry.get("usd"))
        if not price or price <= 0:
            raise ParseError(f"no usd price for {native_id}")
        return Tick(
            key=native_id,
            price=price,
            change24h=to_float(entry.get("usd_24h_change")) or 0.0,
            source=self.venue,
            timestamp=time.time(),
        )

    def _candles(self, native_id: str, timeframe: Timeframe, start_ts: int, end_ts: int) -> list[Candle]:
        span_days = max(1, math.ceil((time.time() - start_ts) / 86400))
        days = min(span_days, MAX_CHART_DAYS)

        candles = self._chart_candles(native_id, timeframe, days)
        if not candles:
            self.logger.debug(f"[coingecko] market_chart empty for {native_id}, trying ohlc")
            candles = self._ohlc_candles(native_id, timeframe, _ohlc_days(days))
        return [c for c in candles if start_ts <= c.ts <= end_ts]

    def _chart_candles(self, native_id: str, timeframe: Timeframe, days: int) -> list[Candle]:
        payload = self._get_json(
            f"/coins/{native_id}/market_chart",
            params={"vs_currency": "usd", "days": days},
        )
        if not isinstance(payload, dict):
            return []
        points = _points(payload.get("prices"))
        vols = _points(payload.get("total_volumes"))
        return bucketize_points(points, timeframe.seconds, volumes=vols)

    def _ohlc_candles(self, native_id: str, timeframe: Timeframe, days: int) -> list[Candle]:
        rows = self._get_json(
            f"/coins/{native_id}/ohlc",
            params={"vs_currency": "usd", "days": days},
        )
        if not isinstance(rows, list):
            return []
        raw = []
        for row in rows:
            if not isinstance(row, (list, tuple)) or len(row) < 5:
                continue
            ms, open_, high, low, close = (to_float(v) for v in row[:5])
            if ms is None or close is None:
                continue
            raw.append(Candle(ts=int(ms // 1000), open=open_ or close, high=high or close,
                              low=low or close, close=close))
        # /ohlc granularity depends on `days`; infer it from the spacing.
        spacings = [b.ts - a.ts for a, b in zip(raw, raw[1:]) if b.ts > a.ts]
        native_seconds = min(spacings) if spacings else timeframe.seconds
        return normalize(raw, native_seconds, timeframe.seconds)
