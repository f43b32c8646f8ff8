"""
Phemex public market-data adapter.

Quotes come from ``/md/v2/ticker/24hr``.  Phemex reports prices in three
spellings depending on contract generation:

    *Rp   real price as a decimal string      (closeRp, lastPriceRp, ...)
    plain real price                          (lastPrice, close, ...)
    *Ep   scaled integer                      (closeEp, lastPriceEp, ...)

Ep values are divided by ``10 ** priceScale`` from the instrument metadata
(loaded once through ccxt); without metadata the empirical rule
``raw > 1e12 -> /1e8 else /1e4`` applies.

Kline endpoints have moved between API versions, so several path patterns
are probed in order; the first that answers ``code == 0`` with rows wins and
is tried first on later calls.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Optional

import ccxt

from market_feed.core.errors import ParseError, UpstreamAbsent
from market_feed.core.models import Candle, Tick, Timeframe, Venue
from market_feed.feeds.normalizer import normalize
from market_feed.venues.base import VenueAdapter, percent_change, to_float

_BASE_URL = "https://api.phemex.com"
_TICKER_ENDPOINT = "/md/v2/ticker/24hr"

KLINE_ENDPOINTS = (
    "/exchange/public/md/v2/kline/list",
    "/exchange/public/md/v2/kline",
    "/md/v2/kline",
    "/exchange/public/md/kline",
    "/md/kline",
)

NATIVE_RESOLUTIONS = (60, 300, 900, 1800, 3600, 14400, 86400)

_RP_PRICE_FIELDS = ("closeRp", "lastPriceRp", "markPriceRp", "indexPriceRp")
_PLAIN_PRICE_FIELDS = ("lastPrice", "close", "markPrice", "indexPrice")
_EP_PRICE_FIELDS = ("closeEp", "lastPriceEp", "markPriceEp")


def heuristic_descale(raw: float) -> float:
    return raw / 1e8 if raw > 1e12 else raw / 1e4


class PhemexAdapter(VenueAdapter):
    """
    Parameters
    ----------
    price_scales : dict[str, int], optional
        ``symbol -> priceScale``.  ``None`` loads them lazily from Phemex
        instrument metadata via ccxt; pass ``{}`` to rely on the heuristic.
    """

    venue = Venue.PHEMEX

    def __init__(
        self,
        base_url: str = _BASE_URL,
        price_scales: Optional[dict[str, int]] = None,
        **kwargs,
    ) -> None:
        super().__init__(base_url, **kwargs)
        self._price_scales = price_scales
        self._preferred_endpoint: Optional[str] = None
        self._scales_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Scaling
    # ------------------------------------------------------------------

    def _load_price_scales(self) -> dict[str, int]:
        exchange = ccxt.phemex()
        markets = exchange.load_markets()
        scales: dict[str, int] = {}
        for market in markets.values():
            info = market.get("info") or {}
            scale = info.get("priceScale")
            if market.get("id") and scale not in (None, ""):
                scales[market["id"]] = int(scale)
        self.logger.info(f"[phemex] loaded price scales for {len(scales)} instruments")
        return scales

    def price_scale(self, symbol: str) -> Optional[int]:
        if self._price_scales is None:
            # Pollers call this from worker threads.
            with self._scales_lock:
                if self._price_scales is None:
                    try:
                        self._price_scales = self._load_price_scales()
                    except (ccxt.BaseError, ValueError, TypeError) as exc:
                        self.logger.warning(f"[phemex] instrument metadata unavailable, using heuristic: {exc}")
                        self._price_scales = {}
        return self._price_scales.get(symbol)

    def descale(self, symbol: str, raw: float) -> float:
        scale = self.price_scale(symbol)
        if scale is not None:
            return raw / (10 ** scale)
        return heuristic_descale(raw)

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    @staticmethod
    def _ticker_body(payload: Any) -> dict:
        if not isinstance(payload, dict):
            raise ParseError("unexpected ticker payload")
        if payload.get("code") not in (None, 0):
            raise UpstreamAbsent(f"code={payload.get('code')} msg={payload.get('msg')}")
        body = payload.get("result")
        if body is None:
            data = payload.get("data")
            body = data[0] if isinstance(data, list) and data else data
        if body is None:
            body = payload
        if not isinstance(body, dict):
            raise ParseError("ticker body is not an object")
        return body

    def parse_price(self, symbol: str, t: dict) -> Optional[float]:
        for name in _RP_PRICE_FIELDS + _PLAIN_PRICE_FIELDS:
            value = to_float(t.get(name))
            if value and value > 0:
                return value
        for name in _EP_PRICE_FIELDS:
            raw = to_float(t.get(name))
            if raw and raw > 0:
                price = self.descale(symbol, raw)
                if price > 0:
                    return price
        return None

    def _quote(self, native_id: str) -> Optional[Tick]:
        t = self._ticker_body(self._get_json(_TICKER_ENDPOINT, params={"symbol": native_id}))
        price = self.parse_price(native_id, t)
        if price is None:
            raise ParseError(f"no usable price field for {native_id}")

        open_rp = to_float(t.get("openRp"))
        volume = to_float(t.get("volumeRq")) or to_float(t.get("turnoverRv")) or to_float(t.get("volume"))
        return Tick(
            key=native_id,
            price=price,
            change24h=percent_change(price, open_rp),
            source=self.venue,
            timestamp=time.time(),
            high24h=to_float(t.get("highRp")) or to_float(t.get("high")) or price,
            low24h=to_float(t.get("lowRp")) or to_float(t.get("low")) or price,
            volume24h=volume,
        )

    # ------------------------------------------------------------------
    # Candles
    # ------------------------------------------------------------------

    def _parse_rows(self, symbol: str, rows: list) -> list[Candle]:
        candles = []
        for row in rows:
            if isinstance(row, (list, tuple)):
                # [timestamp, interval, lastClose, open, high, low, close, volume, turnover]
                if len(row) < 7:
                    continue
                ts = int(row[0] or 0)
                open_, high, low, close = (to_float(v) or 0.0 for v in row[3:7])
                volume = to_float(row[7]) if len(row) > 7 else 0.0
            elif isinstance(row, dict):
                ts = int(row.get("timestamp") or row.get("t") or 0)
                close = to_float(row.get("closeRp") or row.get("close") or row.get("c")) or 0.0
                if not close and row.get("closeEp"):
                    close = self.descale(symbol, float(row["closeEp"]))
                open_ = to_float(row.get("openRp") or row.get("open") or row.get("o")) or close
                high = to_float(row.get("highRp") or row.get("high") or row.get("h")) or close
                low = to_float(row.get("lowRp") or row.get("low") or row.get("l")) or close
                volume = to_float(row.get("volumeRq") or row.get("volume") or row.get("v"))
            else:
                continue
            if ts <= 0 or close <= 0:
                continue
            candles.append(Candle(ts=ts, open=open_ or close, high=high or close, low=low or close,
                                  close=close, volume=volume or 0.0))
        return candles

    @staticmethod
    def _rows(payload: Any) -> list:
        if not isinstance(payload, dict) or payload.get("code") not in (None, 0):
            return []
        data = payload.get("data")
        if isinstance(data, dict):
            rows = data.get("rows") or data.get("klines") or []
        else:
            rows = data or []
        return rows if isinstance(rows, list) else []

    def _candles(self, native_id: str, timeframe: Timeframe, start_ts: int, end_ts: int) -> list[Candle]:
        resolution = timeframe.seconds
        if resolution not in NATIVE_RESOLUTIONS:
            resolution = Timeframe.H1.seconds
        params = {"symbol": native_id, "resolution": resolution, "from": start_ts, "to": end_ts}

        endpoints = list(KLINE_ENDPOINTS)
        if self._preferred_endpoint in endpoints:
            endpoints.remove(self._preferred_endpoint)
            endpoints.insert(0, self._preferred_endpoint)

        for path in endpoints:
            try:
                payload = self._get_json(path, params=params)
            except UpstreamAbsent:
                continue
            except Exception as exc:
                self.logger.debug(f"[phemex] {path} failed for {native_id}: {exc}")
                continue
            candles = self._parse_rows(native_id, self._rows(payload))
            if candles:
                self._preferred_endpoint = path
                return normalize(candles, resolution, timeframe.seconds)
        return []
