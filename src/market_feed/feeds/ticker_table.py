"""
TickerTable: CanonicalKey -> latest Tick, plus the feed status of each key.

The table is mutated only from the event-loop thread.  Consumers either
register a plain listener (called synchronously on every accepted tick) or
iterate :meth:`TickerTable.changes`, which coalesces bursts so that a slow
reader only ever sees the most recent tick per key::

    async for batch in handle.tickers.changes():
        for key, tick in batch.items():
            render(key, tick.price)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import AsyncIterator, Callable, Iterator, Optional

from market_feed.core.models import FeedStatus, Tick

logger = logging.getLogger(__name__)

TickListener = Callable[[Tick], None]


class _Cursor:
    __slots__ = ("pending", "event")

    def __init__(self) -> None:
        self.pending: set[str] = set()
        self.event = asyncio.Event()


class TickerTable(Mapping):
    def __init__(self) -> None:
        self._ticks: dict[str, Tick] = {}
        self._status: dict[str, FeedStatus] = {}
        self._listeners: list[TickListener] = []
        self._cursors: list[_Cursor] = []

    # --- Mapping ---------------------------------------------------------

    def __getitem__(self, key: str) -> Tick:
        return self._ticks[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._ticks)

    def __len__(self) -> int:
        return len(self._ticks)

    def __repr__(self) -> str:
        return f"TickerTable({ {k: t.price for k, t in self._ticks.items()} })"

    # --- Updates ---------------------------------------------------------

    def status(self, key: str) -> Optional[FeedStatus]:
        return self._status.get(key)

    def snapshot(self) -> dict[str, Tick]:
        return dict(self._ticks)

    def update(self, tick: Tick, status: FeedStatus) -> None:
        """Store *tick* under ``tick.key`` and notify listeners."""
        self._ticks[tick.key] = tick
        self._status[tick.key] = status

        for listener in list(self._listeners):
            try:
                listener(tick)
            except Exception as exc:
                logger.error(f"Ticker listener failed for {tick.key}: {exc}", exc_info=True)

        for cursor in self._cursors:
            cursor.pending.add(tick.key)
            cursor.event.set()

    def add_listener(self, listener: TickListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def changes(self) -> AsyncIterator[dict[str, Tick]]:
        """Yield ``{key: latest tick}`` for every key updated since the previous batch."""
        cursor = _Cursor()
        self._cursors.append(cursor)
        try:
            while True:
                await cursor.event.wait()
                cursor.event.clear()
                keys, cursor.pending = cursor.pending, set()
                batch = {key: self._ticks[key] for key in keys if key in self._ticks}
                if batch:
                    yield batch
        finally:
            self._cursors.remove(cursor)
