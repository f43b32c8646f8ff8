"""
Live Aggregator: holdings -> continuously updated TickerTable.

Each distinct CanonicalKey gets one pipeline, shared (ref-counted) by every
holding and every watch that maps to it.  A pipeline arms its primary
venue and ``fallback_depth`` fallbacks at once:

    coinbase primary, listed WebSocket subscription      -> LIVE
    phemex / coinbase REST   poller                       -> POLLING
    yahoo / coingecko        poller                       -> DELAYED

A tick from a lower-ranked source reaches the table only while every
higher-ranked source is silent, i.e. has not ticked within its staleness
window (the Phemex poll interval for the WebSocket, twice the poll interval
for pollers).  A WebSocket leaving READY counts as silent immediately.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from functools import partial
from typing import Any, Callable, Iterable, Mapping, Optional

from market_feed.config import Settings
from market_feed.core.models import FeedStatus, Holding, RoutingPlan, Tick, Venue
from market_feed.core.symbols import CB_PRODUCTS, resolve
from market_feed.feeds.poller import Poller
from market_feed.feeds.ticker_table import TickerTable
from market_feed.venues.base import VenueAdapter
from market_feed.venues.coinbase_websocket import CoinbaseTickerFeed, FeedState
from market_feed.venues.registry import build_adapters

_POLL_STATUS = {
    Venue.COINBASE: FeedStatus.POLLING,
    Venue.PHEMEX: FeedStatus.POLLING,
    Venue.YAHOO: FeedStatus.DELAYED,
    Venue.COINGECKO: FeedStatus.DELAYED,
}


def _holding_fields(holding: Any) -> tuple[Any, Any]:
    if isinstance(holding, Holding):
        return holding.symbol, holding.type
    if isinstance(holding, Mapping):
        return holding.get("symbol"), holding.get("type")
    if isinstance(holding, str):
        return holding, None
    return getattr(holding, "symbol", None), getattr(holding, "type", None)


def _streams_on_coinbase(plan: RoutingPlan) -> bool:
    """Coinbase streams only listed products, or ones named with a COINBASE: prefix."""
    return plan.key in CB_PRODUCTS or plan.venue_hint == Venue.COINBASE


class _Source:
    __slots__ = ("venue", "rank", "staleness", "status", "last_tick_at", "stops")

    def __init__(self, venue: Venue, rank: int, staleness: float, status: FeedStatus) -> None:
        self.venue = venue
        self.rank = rank
        self.staleness = staleness
        self.status = status
        self.last_tick_at: Optional[float] = None
        self.stops: list[Callable[[], None]] = []

    def is_active(self, now: float) -> bool:
        return self.last_tick_at is not None and now - self.last_tick_at < self.staleness


class _KeyPipeline:
    """All sources armed for one CanonicalKey."""

    def __init__(
        self,
        plan: RoutingPlan,
        adapters: Mapping[Venue, VenueAdapter],
        feed: Optional[CoinbaseTickerFeed],
        settings: Settings,
        table: TickerTable,
        clock: Callable[[], float],
        logger: logging.Logger,
    ) -> None:
        self.plan = plan
        self.refs = 0
        self.sources: list[_Source] = []
        self._adapters = adapters
        self._feed = feed
        self._settings = settings
        self._table = table
        self._clock = clock
        self.logger = logger
        self._stopped = False

    def start(self) -> None:
        venues = self.plan.venues[: 1 + self._settings.fallback_depth]
        for rank, venue in enumerate(venues):
            native_id = self.plan.native_id(venue)
            if rank == 0 and venue == Venue.COINBASE and self._feed is not None and _streams_on_coinbase(self.plan):
                source = _Source(venue, rank, self._settings.phemex_poll_interval, FeedStatus.LIVE)
                source.stops.append(self._feed.subscribe(native_id, partial(self._on_tick, source)))
                source.stops.append(self._feed.add_state_listener(partial(self._on_feed_state, source)))
            else:
                adapter = self._adapters.get(venue)
                if adapter is None:
                    self.logger.warning(f"No adapter for {venue.value}; {self.plan.key} runs without it")
                    continue
                interval = self._settings.poll_interval(venue.value)
                source = _Source(venue, rank, 2 * interval, _POLL_STATUS[venue])
                poller = Poller(
                    partial(adapter.fetch_quote, native_id),
                    interval,
                    partial(self._on_tick, source),
                    name=f"{venue.value}:{native_id}",
                    logger=self.logger,
                )
                poller.start()
                source.stops.append(poller.stop)
            self.sources.append(source)

        armed = ", ".join(f"{s.venue.value}({s.status.value})" for s in self.sources)
        self.logger.info(f"Watching {self.plan.key} via {armed or 'nothing'}")

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        for source in self.sources:
            for stop in source.stops:
                stop()
        self.logger.info(f"Stopped watching {self.plan.key}")

    def _on_feed_state(self, source: _Source, state: FeedState) -> None:
        if state != FeedState.READY and source.last_tick_at is not None:
            self.logger.info(f"{self.plan.key}: coinbase stream {state.value}, fallbacks take over")
            source.last_tick_at = None

    def _on_tick(self, source: _Source, tick: Tick) -> None:
        if self._stopped or not tick.price > 0:
            return
        now = self._clock()
        source.last_tick_at = now

        for other in self.sources:
            if other.rank < source.rank and other.is_active(now):
                self.logger.debug(
                    f"{self.plan.key}: suppressed {source.venue.value} tick, {other.venue.value} is active"
                )
                return

        self._table.update(replace(tick, key=self.plan.key), source.status)


class WatchHandle:
    """What :meth:`LiveAggregator.watch` returns: the live table and a teardown."""

    def __init__(self, tickers: TickerTable, keys: list[str], release: Callable[[list[str]], None]) -> None:
        self.tickers = tickers
        self.keys = tuple(keys)
        self._release = release
        self._teardown: list[Callable[[], None]] = []
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def add_teardown(self, callback: Callable[[], None]) -> None:
        self._teardown.append(callback)

    def stop(self) -> None:
        """Tear down every pipeline this handle holds.  Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        self._release(list(self.keys))
        for callback in self._teardown:
            callback()


class LiveAggregator:
    """
    Parameters
    ----------
    adapters : dict[Venue, VenueAdapter], optional
        REST adapters; built from *settings* when omitted.
    feed : CoinbaseTickerFeed, optional
        Coinbase stream.  Without one, Coinbase is polled over REST.
    settings : Settings, optional
        Poll intervals and fallback depth; ``Settings.from_env()`` when omitted.
    table : TickerTable, optional
        Shared output table.
    clock : callable
        Monotonic clock used for fallback suppression.

    Must be driven from a running event loop: ``watch`` starts tasks.
    """

    def __init__(
        self,
        adapters: Optional[Mapping[Venue, VenueAdapter]] = None,
        feed: Optional[CoinbaseTickerFeed] = None,
        settings: Optional[Settings] = None,
        table: Optional[TickerTable] = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self.logger = logger or logging.getLogger(__name__)
        self.adapters = adapters if adapters is not None else build_adapters(self.settings)
        self.feed = feed
        self.table = table if table is not None else TickerTable()
        self._clock = clock
        self._pipelines: dict[str, _KeyPipeline] = {}

    @property
    def keys(self) -> list[str]:
        return list(self._pipelines)

    def refcount(self, key: str) -> int:
        pipeline = self._pipelines.get(key)
        return pipeline.refs if pipeline else 0

    def watch(self, holdings: Iterable[Any]) -> WatchHandle:
        """Start (or join) a pipeline for every resolvable holding."""
        keys: list[str] = []
        for holding in holdings:
            symbol, asset_type = _holding_fields(holding)
            plan = resolve(symbol, asset_type)
            if plan is None:
                self.logger.info(f"Skipping holding {symbol!r}: symbol cannot be resolved")
                continue
            if plan.key in keys:
                continue

            pipeline = self._pipelines.get(plan.key)
            if pipeline is None:
                pipeline = _KeyPipeline(
                    plan, self.adapters, self.feed, self.settings, self.table, self._clock, self.logger
                )
                self._pipelines[plan.key] = pipeline
                pipeline.start()
            pipeline.refs += 1
            keys.append(plan.key)

        return WatchHandle(self.table, keys, self._release)

    def _release(self, keys: list[str]) -> None:
        for key in keys:
            pipeline = self._pipelines.get(key)
            if pipeline is None:
                continue
            pipeline.refs -= 1
            if pipeline.refs <= 0:
                pipeline.stop()
                del self._pipelines[key]

    def close(self) -> None:
        """Stop every pipeline regardless of outstanding handles."""
        for pipeline in self._pipelines.values():
            pipeline.stop()
        self._pipelines.clear()


def watch_tickers(
    holdings: Iterable[Any],
    settings: Optional[Settings] = None,
    adapters: Optional[Mapping[Venue, VenueAdapter]] = None,
    feed: Optional[CoinbaseTickerFeed] = None,
) -> WatchHandle:
    """
    Watch *holdings* and return a handle exposing ``tickers`` and ``stop()``.

    Call from inside a running event loop.  When no *feed* is given a
    Coinbase stream is created for this watch and closed by ``stop()``.
    """
    settings = settings or Settings.from_env()
    owned_feed = feed is None
    if owned_feed:
        feed = CoinbaseTickerFeed.from_settings(settings)

    aggregator = LiveAggregator(adapters=adapters, feed=feed, settings=settings)
    handle = aggregator.watch(holdings)
    handle.add_teardown(aggregator.close)
    if owned_feed:
        handle.add_teardown(feed.close)
    return handle
