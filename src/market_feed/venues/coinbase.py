"""
Coinbase Exchange public REST adapter.

    GET /products/{id}/ticker
    GET /products/{id}/stats
    GET /products/{id}/candles?granularity=&start=&end=

Candles come back newest-first as ``[time, low, high, open, close, volume]``
rows, at most 300 per request, so history is paged backward from ``end``.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional

from market_feed.core.errors import ParseError
from market_feed.core.models import Candle, Tick, Timeframe, Venue
from market_feed.feeds.normalizer import normalize
from market_feed.venues.base import VenueAdapter, percent_change, to_float

_BASE_URL = "https://api.exchange.coinbase.com"

NATIVE_GRANULARITIES = (60, 300, 900, 3600, 21600, 86400)

# Coinbase serves at most 300 candles per request.
MAX_CANDLES_PER_REQUEST = 300
MAX_BATCHES = 15


def _iso(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class CoinbaseAdapter(VenueAdapter):
    venue = Venue.COINBASE

    def __init__(self, base_url: str = _BASE_URL, **kwargs) -> None:
        super().__init__(base_url, **kwargs)

    def _quote(self, native_id: str) -> Optional[Tick]:
        ticker = self._get_json(f"/products/{native_id}/ticker")
        if not isinstance(ticker, dict):
            raise ParseError(f"unexpected ticker payload for {native_id}")
        price = to_float(ticker.get("price"))
        if not price or price <= 0:
            raise ParseError(f"no price in ticker for {native_id}")

        # Stats only enrich the tick; a failure here still yields a quote.
        stats: dict = {}
        try:
            payload = self._get_json(f"/products/{native_id}/stats")
            if isinstance(payload, dict):
                stats = payload
        except Exception as exc:
            self.logger.debug(f"[coinbase] stats unavailable for {native_id}: {exc}")

        return Tick(
            key=native_id,
            price=price,
            change24h=percent_change(price, to_float(stats.get("open"))),
            source=self.venue,
            timestamp=time.time(),
            high24h=to_float(stats.get("high")),
            low24h=to_float(stats.get("low")),
            volume24h=to_float(stats.get("volume")) or to_float(ticker.get("volume")),
        )

    @staticmethod
    def fetch_granularity(timeframe: Timeframe) -> int:
        """Granularity requested upstream; non-native timeframes are built from 1H."""
        if timeframe.seconds in NATIVE_GRANULARITIES:
            return timeframe.seconds
        return Timeframe.H1.seconds

    def _candles(self, native_id: str, timeframe: Timeframe, start_ts: int, end_ts: int) -> list[Candle]:
        granularity = self.fetch_granularity(timeframe)
        raw: list[Candle] = []
        cursor = end_ts
        batch = 0

        while cursor > start_ts and batch < MAX_BATCHES:
            batch += 1
            batch_start = max(start_ts, cursor - (MAX_CANDLES_PER_REQUEST - 1) * granularity)
            rows = self._get_json(
                f"/products/{native_id}/candles",
                params={"granularity": granularity, "start": _iso(batch_start), "end": _iso(cursor)},
            )
            if not isinstance(rows, list) or not rows:
                break
            for row in rows:
                if not isinstance(row, (list, tuple)) or len(row) < 6:
                    continue
                ts, low, high, open_, close, volume = (to_float(v) for v in row[:6])
                if ts is None or close is None:
                    continue
                raw.append(Candle(ts=int(ts), open=open_ or close, high=high or close, low=low or close,
                                  close=close, volume=volume or 0.0))
            self.logger.debug(f"[coinbase] {native_id} batch {batch}: {len(rows)} rows")
            cursor = batch_start - granularity

        return normalize(raw, granularity, timeframe.seconds)
