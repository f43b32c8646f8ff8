from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple


class AssetType(str, Enum):
    CRYPTO_SPOT = "crypto_spot"
    CRYPTO_PERP = "crypto_perp"
    EQUITY = "equity"


class Venue(str, Enum):
    COINBASE = "coinbase"
    PHEMEX = "phemex"
    YAHOO = "yahoo"
    COINGECKO = "coingecko"


class FeedStatus(str, Enum):
    LIVE = "live"          # streaming over the Coinbase WebSocket
    POLLING = "polling"    # fast REST polling (Phemex / Coinbase REST)
    DELAYED = "delayed"    # slow REST polling (Yahoo / CoinGecko)


_TIMEFRAME_SECONDS = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "1H": 3600,
    "4H": 14400,
    "1D": 86400,
}

# Candles loaded when a request carries no explicit start.
_TIMEFRAME_DEFAULT_COUNT = {
    "1m": 360,
    "5m": 288,
    "15m": 288,
    "1H": 720,
    "4H": 540,
    "1D": 365,
}


class Timeframe(str, Enum):
    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    H1 = "1H"
    H4 = "4H"
    D1 = "1D"

    @property
    def seconds(self) -> int:
        return _TIMEFRAME_SECONDS[self.value]

    @property
    def default_count(self) -> int:
        return _TIMEFRAME_DEFAULT_COUNT[self.value]

    @classmethod
    def parse(cls, value: "Timeframe | str") -> "Timeframe":
        """Accept a Timeframe or its string form; ``1h``/``4h``/``1d`` are tolerated."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for tf in cls:
            if tf.value == text:
                return tf
        if text[-1:] in ("h", "d"):
            return cls.parse(text[:-1] + text[-1].upper())
        raise ValueError(f"Unsupported timeframe: {value!r}")


@dataclass(frozen=True)
class RoutingPlan:
    key: str                          # CanonicalKey, e.g. "BTC"
    primary: Venue
    fallbacks: Tuple[Venue, ...]
    native_ids: Mapping[Venue, str]
    asset_type: AssetType
    venue_hint: Optional[Venue] = None   # venue named by an EXCHANGE: prefix

    def __post_init__(self):
        object.__setattr__(self, "native_ids", MappingProxyType(dict(self.native_ids)))

    @property
    def venues(self) -> Tuple[Venue, ...]:
        """Primary first, then fallbacks in priority order."""
        return (self.primary,) + self.fallbacks

    def native_id(self, venue: Venue) -> Optional[str]:
        return self.native_ids.get(venue)


@dataclass(frozen=True)
class Tick:
    key: str
    price: float
    change24h: float
    source: Venue
    timestamp: float                  # epoch seconds, UTC
    high24h: Optional[float] = None
    low24h: Optional[float] = None
    volume24h: Optional[float] = None


@dataclass
class Candle:
    ts: int          # bucket start, seconds since epoch (UTC)
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass
class CandleSeries:
    key: str
    timeframe: Timeframe
    candles: list[Candle] = field(default_factory=list)
    source: Optional[Venue] = None

    def __len__(self) -> int:
        return len(self.candles)


@dataclass(frozen=True)
class Holding:
    symbol: str
    type: Optional[AssetType] = None


@dataclass(frozen=True)
class CandleRequest:
    key: str
    type: Optional[AssetType] = None
    since: Optional[int] = None       # epoch seconds; None -> timeframe default window
    venue_hint: Optional[Venue] = None
