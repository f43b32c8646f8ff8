"""
Yahoo Finance adapter for equities.

Quotes try ``/v7/finance/quote`` first and fall back to the v8 chart
endpoint (2-day range, change derived from the previous close).  Candles are
downloaded through yfinance at the nearest native interval and normalised;
``4H`` is built from ``1h`` bars.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional

import requests

from market_feed.core.errors import MarketFeedError, ParseError, UpstreamAbsent
from market_feed.core.models import Candle, Tick, Timeframe, Venue
from market_feed.data.yahoo_finance import download_ticker_data, frame_timestamps
from market_feed.feeds.normalizer import normalize
from market_feed.venues.base import VenueAdapter, percent_change, to_float

_BASE_URL = "https://query2.finance.yahoo.com"

_QUOTE_FIELDS = (
    "regularMarketPrice,regularMarketChangePercent,regularMarketPreviousClose,"
    "regularMarketDayHigh,regularMarketDayLow,regularMarketVolume"
)

# Timeframe -> (yfinance interval, its length in seconds)
INTERVALS = {
    Timeframe.M1: ("1m", 60),
    Timeframe.M5: ("5m", 300),
    Timeframe.M15: ("15m", 900),
    Timeframe.H1: ("1h", 3600),
    Timeframe.H4: ("1h", 3600),
    Timeframe.D1: ("1d", 86400),
}

_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


class YahooAdapter(VenueAdapter):
    venue = Venue.YAHOO

    def __init__(self, base_url: str = _BASE_URL, **kwargs) -> None:
        super().__init__(base_url, **kwargs)

    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json", "User-Agent": _USER_AGENT}

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    def _quote(self, native_id: str) -> Optional[Tick]:
        try:
            return self._quote_v7(native_id)
        except (MarketFeedError, requests.RequestException) as exc:
            self.logger.debug(f"[yahoo] v7 quote unavailable for {native_id} ({exc}), trying chart")
        return self._quote_chart(native_id)

    def _quote_v7(self, native_id: str) -> Tick:
        payload = self._get_json("/v7/finance/quote", params={"symbols": native_id, "fields": _QUOTE_FIELDS})
        if not isinstance(payload, dict):
            raise ParseError(f"unexpected quote payload for {native_id}")
        results = (payload.get("quoteResponse") or {}).get("result") or []
        if not results or not isinstance(results[0], dict):
            raise UpstreamAbsent(f"empty quoteResponse for {native_id}")
        q = results[0]
        price = to_float(q.get("regularMarketPrice"))
        if not price or price <= 0:
            raise ParseError(f"no regularMarketPrice for {native_id}")

        change = to_float(q.get("regularMarketChangePercent"))
        if change is None:
            change = percent_change(price, to_float(q.get("regularMarketPreviousClose")))
        return Tick(
            key=native_id,
            price=price,
            change24h=change,
            source=self.venue,
            timestamp=time.time(),
            high24h=to_float(q.get("regularMarketDayHigh")),
            low24h=to_float(q.get("regularMarketDayLow")),
            volume24h=to_float(q.get("regularMarketVolume")),
        )

    def _quote_chart(self, native_id: str) -> Tick:
        payload = self._get_json(f"/v8/finance/chart/{native_id}", params={"range": "2d", "interval": "1d"})
        if not isinstance(payload, dict):
            raise ParseError(f"unexpected chart payload for {native_id}")
        results = (payload.get("chart") or {}).get("result") or []
        if not results or not isinstance(results[0], dict):
            raise UpstreamAbsent(f"empty chart for {native_id}")
        meta = results[0].get("meta") or {}
        price = to_float(meta.get("regularMarketPrice"))
        if not price or price <= 0:
            raise ParseError(f"no regularMarketPrice in chart meta for {native_id}")

        previous = to_float(meta.get("previousClose")) or to_float(meta.get("chartPreviousClose"))
        return Tick(
            key=native_id,
            price=price,
            change24h=percent_change(price, previous),
            source=self.venue,
            timestamp=time.time(),
            high24h=to_float(meta.get("regularMarketDayHigh")),
            low24h=to_float(meta.get("regularMarketDayLow")),
            volume24h=to_float(meta.get("regularMarketVolume")),
        )

    # ------------------------------------------------------------------
    # Candles
    # ------------------------------------------------------------------

    def _candles(self, native_id: str, timeframe: Timeframe, start_ts: int, end_ts: int) -> list[Candle]:
        interval, native_seconds = INTERVALS[timeframe]
        data = download_ticker_data(
            native_id,
            start=datetime.fromtimestamp(start_ts, tz=timezone.utc),
            end=datetime.fromtimestamp(end_ts + native_seconds, tz=timezone.utc),
            interval=interval,
        )
        if data is None:
            return []

        raw = []
        for ts, row in zip(frame_timestamps(data), data.itertuples(index=False)):
            close = to_float(getattr(row, "Close", None))
            if close is None or close != close:
                continue
            raw.append(Candle(
                ts=ts,
                open=to_float(getattr(row, "Open", None)) or close,
                high=to_float(getattr(row, "High", None)) or close,
                low=to_float(getattr(row, "Low", None)) or close,
                close=close,
                volume=to_float(getattr(row, "Volume", None)) or 0.0,
            ))
        self.logger.debug(f"[yahoo] {native_id} {interval}: {len(raw)} bars")
        return normalize(raw, native_seconds, timeframe.seconds)
