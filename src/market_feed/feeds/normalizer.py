"""
Candle normalisation into the canonical timeframe set.

``normalize`` turns whatever a venue returned (native granularity, any
order, possible duplicates, zero closes) into a clean series at the target
timeframe:

    native == target   drop close <= 0, dedupe by bucket (last wins), sort
    native <  target   bucket by floor(ts / target) * target and aggregate
                       open=first, high=max, low=min, close=last, volume=sum
    native >  target   unsupported -> []

Every returned candle satisfies ``low <= min(open, close)``,
``max(open, close) <= high`` and ``close > 0``; bucket starts are strictly
increasing multiples of the target seconds.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

import pandas as pd

from market_feed.core.models import Candle

logger = logging.getLogger(__name__)

CANDLE_COLUMNS = ["ts", "open", "high", "low", "close", "volume"]


def candles_to_frame(candles: Iterable[Candle]) -> pd.DataFrame:
    rows = [(c.ts, c.open, c.high, c.low, c.close, c.volume) for c in candles]
    df = pd.DataFrame(rows, columns=CANDLE_COLUMNS)
    for col in CANDLE_COLUMNS[1:]:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df["ts"] = pd.to_numeric(df["ts"], errors="coerce")
    return df


def frame_to_candles(df: pd.DataFrame) -> list[Candle]:
    return [
        Candle(
            ts=int(row.ts),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for row in df.itertuples(index=False)
    ]


def _repair(df: pd.DataFrame) -> pd.DataFrame:
    """Fill missing legs from the close and widen high/low to cover open/close."""
    df = df.copy()
    for col in ("open", "high", "low"):
        df[col] = df[col].where(df[col] > 0, df["close"])
    df["volume"] = df["volume"].fillna(0.0)
    legs = df[["open", "high", "low", "close"]].copy()
    df["high"] = legs.max(axis=1)
    df["low"] = legs.min(axis=1)
    return df


def normalize(
    raw_candles: Sequence[Candle],
    native_seconds: int,
    target_seconds: int,
) -> list[Candle]:
    """Resample *raw_candles* from *native_seconds* buckets into *target_seconds* buckets."""
    if not raw_candles or target_seconds <= 0:
        return []
    if native_seconds > target_seconds:
        logger.debug(
            f"Refusing to upsample {native_seconds}s candles into {target_seconds}s buckets"
        )
        return []

    df = candles_to_frame(raw_candles)
    df = df[(df["close"] > 0) & df["ts"].notna()]
    if df.empty:
        return []

    df = _repair(df)
    df["ts"] = df["ts"].astype("int64")
    df["bucket"] = (df["ts"] // target_seconds) * target_seconds

    if native_seconds == target_seconds:
        df = df.drop_duplicates(subset=["bucket"], keep="last")
        out = df.drop(columns=["ts"]).rename(columns={"bucket": "ts"})
    else:
        df = df.drop_duplicates(subset=["ts"], keep="last")
        df = df.sort_values("ts", kind="stable")
        out = (
            df.groupby("bucket", sort=True)
            .agg(
                open=("open", "first"),
                high=("high", "max"),
                low=("low", "min"),
                close=("close", "last"),
                volume=("volume", "sum"),
            )
            .reset_index()
            .rename(columns={"bucket": "ts"})
        )

    out = out.sort_values("ts", kind="stable")[CANDLE_COLUMNS]
    return frame_to_candles(out)


def bucketize_points(
    points: Sequence[tuple[float, float]],
    target_seconds: int,
    volumes: Optional[Sequence[tuple[float, float]]] = None,
) -> list[Candle]:
    """
    Build candles from ``(ts_seconds, price)`` samples, e.g. CoinGecko
    ``market_chart`` prices.  Optional ``(ts_seconds, volume)`` samples are
    matched by timestamp and summed per bucket.
    """
    volume_at = {int(ts): float(v or 0.0) for ts, v in (volumes or [])}
    samples = [
        Candle(ts=int(ts), open=price, high=price, low=price, close=price, volume=volume_at.get(int(ts), 0.0))
        for ts, price in points
        if price is not None
    ]
    return normalize(samples, native_seconds=1, target_seconds=target_seconds)


def merge_tick(candles: list[Candle], price: float, ts: float, target_seconds: int) -> list[Candle]:
    """
    Fold a live price into the tail of *candles* (in place, returned for
    chaining).  The tick's bucket either updates the last candle or opens a
    new flat one; ticks older than the last bucket are ignored.
    """
    if price is None or price <= 0:
        return candles
    bucket = int(ts // target_seconds) * target_seconds
    last = candles[-1] if candles else None

    if last is not None and last.ts == bucket:
        last.close = price
        last.high = max(last.high, price)
        last.low = min(last.low, price)
    elif last is None or bucket > last.ts:
        candles.append(Candle(ts=bucket, open=price, high=price, low=price, close=price, volume=0.0))
    return candles
