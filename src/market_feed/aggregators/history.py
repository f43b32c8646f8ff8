"""
History Aggregator: candle requests -> ``{CanonicalKey: CandleSeries}``.

Each request is resolved and tried venue by venue (primary, then fallbacks;
a ``venue_hint`` is tried first) until one returns candles.  Requests run in
a bounded thread pool so at most ``history_workers`` upstream calls are in
flight.  Keys no venue could serve are simply absent from the result.
"""

from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Iterable, Mapping, NamedTuple, Optional

from market_feed.config import Settings
from market_feed.core.models import CandleRequest, CandleSeries, RoutingPlan, Timeframe, Venue
from market_feed.core.symbols import resolve
from market_feed.venues.base import VenueAdapter
from market_feed.venues.registry import build_adapters


class _Job(NamedTuple):
    plan: RoutingPlan
    venues: tuple[Venue, ...]
    start_ts: int


def _as_request(item: Any) -> CandleRequest:
    if isinstance(item, CandleRequest):
        return item
    if isinstance(item, Mapping):
        hint = item.get("venue_hint", item.get("venueHint"))
        return CandleRequest(
            key=item.get("key") or item.get("symbol"),
            type=item.get("type"),
            since=item.get("since"),
            venue_hint=Venue(hint) if hint else None,
        )
    if isinstance(item, str):
        return CandleRequest(key=item)
    raise TypeError(f"Unsupported candle request: {item!r}")


class HistoryAggregator:
    """
    Parameters
    ----------
    adapters : dict[Venue, VenueAdapter], optional
        REST adapters; built from *settings* when omitted.
    settings : Settings, optional
        ``history_workers`` bounds the pool.
    clock : callable
        Wall clock in epoch seconds, used for window ends and default starts.
    """

    def __init__(
        self,
        adapters: Optional[Mapping[Venue, VenueAdapter]] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self.logger = logger or logging.getLogger(__name__)
        self.adapters = adapters if adapters is not None else build_adapters(self.settings)
        self._clock = clock

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _plan_jobs(self, requests: Iterable[Any], timeframe: Timeframe, now: int) -> dict[str, _Job]:
        default_start = now - timeframe.default_count * timeframe.seconds
        jobs: dict[str, _Job] = {}
        for item in requests:
            try:
                request = _as_request(item)
            except (TypeError, ValueError) as exc:
                self.logger.warning(f"Skipping candle request {item!r}: {exc}")
                continue

            plan = resolve(request.key, request.type)
            if plan is None:
                self.logger.info(f"Skipping candle request {request.key!r}: symbol cannot be resolved")
                continue

            venues = plan.venues
            if request.venue_hint is not None and request.venue_hint in venues:
                venues = (request.venue_hint,) + tuple(v for v in venues if v != request.venue_hint)

            start_ts = int(request.since) if request.since is not None else default_start
            existing = jobs.get(plan.key)
            if existing is not None:
                # Duplicate key: one fetch covering the widest window.
                jobs[plan.key] = existing._replace(start_ts=min(existing.start_ts, start_ts))
                continue
            jobs[plan.key] = _Job(plan, venues, start_ts)
        return jobs

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _fetch_one(self, job: _Job, timeframe: Timeframe, end_ts: int) -> Optional[CandleSeries]:
        for venue in job.venues:
            adapter = self.adapters.get(venue)
            native_id = job.plan.native_id(venue)
            if adapter is None or native_id is None:
                continue
            try:
                candles = adapter.fetch_candles(native_id, timeframe, job.start_ts, end_ts)
            except Exception as exc:
                self.logger.error(f"{venue.value} candles raised for {job.plan.key}: {exc}", exc_info=True)
                candles = []
            if candles:
                self.logger.debug(f"{job.plan.key}: {len(candles)} {timeframe.value} candles from {venue.value}")
                return CandleSeries(key=job.plan.key, timeframe=timeframe, candles=candles, source=venue)
            self.logger.debug(f"{job.plan.key}: no candles from {venue.value}, trying next venue")
        return None

    def fetch_all(self, requests: Iterable[Any], timeframe: Timeframe | str) -> dict[str, CandleSeries]:
        """Fetch candles for every request; only keys with data appear in the result."""
        timeframe = Timeframe.parse(timeframe)
        now = int(self._clock())
        jobs = self._plan_jobs(requests, timeframe, now)
        if not jobs:
            return {}

        results: dict[str, CandleSeries] = {}
        workers = max(1, min(self.settings.history_workers, len(jobs)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self._fetch_one, job, timeframe, now): key
                for key, job in jobs.items()
            }
            for future in as_completed(futures):
                key = futures[future]
                try:
                    series = future.result()
                except Exception as exc:
                    self.logger.error(f"Candle fetch failed for {key}: {exc}", exc_info=True)
                    continue
                if series is not None and series.candles:
                    results[key] = series

        missing = sorted(set(jobs) - set(results))
        if missing:
            self.logger.info(f"No {timeframe.value} candles from any venue for: {', '.join(missing)}")
        return results

    async def afetch_all(self, requests: Iterable[Any], timeframe: Timeframe | str) -> dict[str, CandleSeries]:
        """:meth:`fetch_all` on a worker thread, for asyncio callers."""
        return await asyncio.to_thread(self.fetch_all, list(requests), timeframe)


def fetch_candles(
    requests: Iterable[Any],
    timeframe: Timeframe | str,
    settings: Optional[Settings] = None,
    adapters: Optional[Mapping[Venue, VenueAdapter]] = None,
) -> dict[str, CandleSeries]:
    """Fetch candles for *requests* at *timeframe*; never raises for upstream failures."""
    return HistoryAggregator(adapters=adapters, settings=settings).fetch_all(requests, timeframe)
