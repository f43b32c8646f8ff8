"""Configuration management.

Settings come from defaults, a handful of environment variables and an
optional JSON file whose keys are ``Settings`` field names::

    {
        "phemex_poll_interval": 5,
        "history_workers": 4,
        "proxy_prefix": "http://localhost:5173/api"
    }
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path


@dataclass
class Settings:
    """Runtime settings for adapters, pollers and aggregators."""

    coinbase_rest_url: str = "https://api.exchange.coinbase.com"
    coinbase_ws_url: str = "wss://ws-feed.exchange.coinbase.com"
    phemex_url: str = "https://api.phemex.com"
    yahoo_url: str = "https://query2.finance.yahoo.com"
    coingecko_url: str = "https://api.coingecko.com/api/v3"
    # Same-origin reverse proxy; when set every REST base becomes {prefix}/{venue}.
    proxy_prefix: str = ""
    coingecko_api_key: str = ""

    request_timeout: float = 10.0
    coinbase_poll_interval: float = 5.0
    phemex_poll_interval: float = 5.0
    yahoo_poll_interval: float = 15.0
    coingecko_poll_interval: float = 30.0
    fallback_depth: int = 1

    history_workers: int = 4
    coingecko_rate_per_minute: int = 30

    reconnect_base: float = 1.0
    reconnect_cap: float = 30.0
    reconnect_jitter: float = 0.0

    log_level: str = "INFO"
    log_path: str = "logs/market_feed.log"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from defaults plus environment overrides."""
        settings = cls(
            coingecko_api_key=os.getenv("COINGECKO_DEMO_API_KEY", "") or os.getenv("COINGECKO_API_KEY", ""),
            proxy_prefix=os.getenv("MARKET_FEED_PROXY_PREFIX", ""),
            log_level=os.getenv("MARKET_FEED_LOG_LEVEL", "INFO"),
        )
        settings.validate()
        return settings

    @classmethod
    def from_file(cls, config_path: str | Path) -> "Settings":
        """Overlay a JSON config file on top of :meth:`from_env`.

        Raises:
            FileNotFoundError: If the file does not exist
            json.JSONDecodeError: If the file is not valid JSON
            ValueError: On unknown keys or invalid values
        """
        with open(config_path, "r") as f:
            data = json.load(f)
        return cls.from_dict(data, source=str(config_path))

    @classmethod
    def from_dict(cls, data: dict, source: str = "settings") -> "Settings":
        """Overlay a mapping of field names on top of :meth:`from_env`."""
        if not isinstance(data, dict):
            raise ValueError(f"{source} must contain a JSON object")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown settings in {source}: {', '.join(unknown)}")

        settings = replace(cls.from_env(), **data)
        settings.validate()
        return settings

    def validate(self) -> None:
        """Validate configuration."""
        positive = (
            "request_timeout",
            "coinbase_poll_interval",
            "phemex_poll_interval",
            "yahoo_poll_interval",
            "coingecko_poll_interval",
            "history_workers",
            "coingecko_rate_per_minute",
            "reconnect_base",
            "reconnect_cap",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.fallback_depth < 0:
            raise ValueError("fallback_depth must be >= 0")
        if not 0 <= self.reconnect_jitter < 1:
            raise ValueError("reconnect_jitter must be in [0, 1)")

    def poll_interval(self, venue: str) -> float:
        """REST polling cadence in seconds for *venue*."""
        return {
            "coinbase": self.coinbase_poll_interval,
            "phemex": self.phemex_poll_interval,
            "yahoo": self.yahoo_poll_interval,
            "coingecko": self.coingecko_poll_interval,
        }[venue]

    def rest_base(self, venue: str) -> str:
        """Base URL for a venue's REST API, honouring ``proxy_prefix``."""
        if self.proxy_prefix:
            return f"{self.proxy_prefix.rstrip('/')}/{venue}"
        return {
            "coinbase": self.coinbase_rest_url,
            "phemex": self.phemex_url,
            "yahoo": self.yahoo_url,
            "coingecko": self.coingecko_url,
        }[venue]
