"""
Common plumbing for venue adapters.

Every adapter exposes the same two capabilities:

    fetch_quote(native_id)                              -> Tick | None
    fetch_candles(native_id, timeframe, start_ts, end_ts) -> list[Candle]

Neither ever raises: upstream failures are logged and turned into
``None`` / ``[]``.  Subclasses implement ``_quote`` / ``_candles`` and may
raise :class:`~market_feed.core.errors.MarketFeedError` (or let
``requests`` errors escape) from there.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import requests

from market_feed.core.errors import MarketFeedError, ParseError, UpstreamAbsent, UpstreamError
from market_feed.core.models import Candle, Tick, Timeframe, Venue

_REQUEST_TIMEOUT = 10

# Shape errors from payloads that parsed as JSON but not as expected.
_MALFORMED = (TypeError, KeyError, AttributeError, IndexError)


def to_float(value: Any) -> Optional[float]:
    """Parse numbers that venues send as strings; ``None`` when unparsable."""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def percent_change(price: float, reference: Optional[float]) -> float:
    if not reference or reference <= 0:
        return 0.0
    return (price - reference) / reference * 100.0


class VenueAdapter(ABC):
    """
    Base class for REST venue adapters.

    Parameters
    ----------
    base_url : str
        REST root (may be a same-origin reverse-proxy prefix).
    timeout : float
        Per-request timeout in seconds.
    session : requests.Session, optional
        Injected session (useful for testing).
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    venue: Venue

    def __init__(
        self,
        base_url: str,
        timeout: float = _REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or self._build_session()
        self.logger = logger or logging.getLogger(__name__)
        self._absent: set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch_quote(self, native_id: str) -> Optional[Tick]:
        """Single price snapshot for *native_id*, or ``None`` on any failure."""
        if native_id in self._absent:
            return None
        try:
            tick = self._quote(native_id)
        except UpstreamAbsent as exc:
            self._absent.add(native_id)
            self.logger.warning(f"[{self.venue.value}] {native_id} not listed: {exc}")
            return None
        except (MarketFeedError, requests.RequestException, ValueError) as exc:
            self.logger.warning(f"[{self.venue.value}] quote failed for {native_id}: {exc}")
            return None
        except _MALFORMED as exc:
            self.logger.warning(f"[{self.venue.value}] malformed quote payload for {native_id}: {exc!r}")
            return None

        if tick is None or not tick.price > 0:
            return None
        return tick

    def fetch_candles(
        self,
        native_id: str,
        timeframe: Timeframe | str,
        start_ts: int,
        end_ts: int,
    ) -> list[Candle]:
        """Candles at *timeframe* covering ``[start_ts, end_ts]``; ``[]`` on failure."""
        if native_id in self._absent:
            return []
        try:
            timeframe = Timeframe.parse(timeframe)
            candles = self._candles(native_id, timeframe, int(start_ts), int(end_ts))
        except UpstreamAbsent as exc:
            self._absent.add(native_id)
            self.logger.warning(f"[{self.venue.value}] {native_id} not listed: {exc}")
            return []
        except (MarketFeedError, requests.RequestException, ValueError) as exc:
            self.logger.warning(f"[{self.venue.value}] candles failed for {native_id}: {exc}")
            return []
        except _MALFORMED as exc:
            self.logger.warning(f"[{self.venue.value}] malformed candle payload for {native_id}: {exc!r}")
            return []
        return candles

    # ------------------------------------------------------------------
    # Venue specifics
    # ------------------------------------------------------------------

    @abstractmethod
    def _quote(self, native_id: str) -> Optional[Tick]:
        pass

    @abstractmethod
    def _candles(self, native_id: str, timeframe: Timeframe, start_ts: int, end_ts: int) -> list[Candle]:
        pass

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        adapter = requests.adapters.HTTPAdapter(pool_connections=4, pool_maxsize=8)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    def _get_json(self, path: str, params: Optional[dict] = None) -> Any:
        """GET ``base_url + path`` and return parsed JSON."""
        url = self._base_url + path
        try:
            resp = self._session.get(url, params=params, headers=self._headers(), timeout=self.timeout)
        except requests.Timeout as exc:
            raise UpstreamError(f"timeout after {self.timeout}s: {url}") from exc

        if resp.status_code == 404:
            raise UpstreamAbsent(f"404 for {url}")
        resp.raise_for_status()
        try:
            return resp.json()
        except ValueError as exc:
            raise ParseError(f"invalid JSON from {url}") from exc
