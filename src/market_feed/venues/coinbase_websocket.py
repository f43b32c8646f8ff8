"""
Coinbase Exchange WebSocket ticker feed.

One connection multiplexes every product that has at least one listener.
Listeners register per product id and receive a :class:`Tick` for each
``ticker`` message::

    IDLE -> CONNECTING -> READY -> CLOSED -> (backoff) -> CONNECTING

On every transition into READY a single subscribe frame listing all live
product ids is sent (replay).  Products added while READY are subscribed
immediately; a product whose last listener leaves is unsubscribed, and when
no product remains the socket is closed and the feed returns to IDLE.

Reconnect delays double from ``reconnect_base`` up to ``reconnect_cap``
(1s, 2s, 4s, 8s, 16s, 30s, 30s, ...) and reset after a successful connect.

All methods must be called from the event-loop thread.

Usage::

    feed = CoinbaseTickerFeed()
    unsubscribe = feed.subscribe("BTC-USD", lambda tick: print(tick.price))
    ...
    unsubscribe()
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from enum import Enum
from typing import Callable, Optional

import pandas as pd
import websockets
from websockets.exceptions import ConnectionClosed

from market_feed.core.models import Tick, Venue
from market_feed.venues.base import percent_change, to_float

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
_WS_URL = "wss://ws-feed.exchange.coinbase.com"
_CHANNELS = ["ticker"]

TickCallback = Callable[[Tick], None]


class FeedState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def reconnect_delay(
    attempts: int,
    base: float = 1.0,
    cap: float = 30.0,
    jitter: float = 0.0,
    rand: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait before reconnect number ``attempts + 1``."""
    delay = min(base * (2 ** attempts), cap)
    if jitter:
        delay *= 1.0 + jitter * (2.0 * rand() - 1.0)
    return delay


def parse_ticker(msg: dict) -> Optional[Tick]:
    """Convert a ``ticker`` message to a Tick keyed by product id; ``None`` without a positive price."""
    price = to_float(msg.get("price"))
    if not price or price <= 0:
        return None
    try:
        timestamp = pd.Timestamp(msg["time"]).timestamp()
    except (KeyError, TypeError, ValueError):
        timestamp = time.time()
    return Tick(
        key=msg.get("product_id", ""),
        price=price,
        change24h=percent_change(price, to_float(msg.get("open_24h"))),
        source=Venue.COINBASE,
        timestamp=timestamp,
        high24h=to_float(msg.get("high_24h")),
        low24h=to_float(msg.get("low_24h")),
        volume24h=to_float(msg.get("volume_24h")),
    )


class _Listener:
    __slots__ = ("callback", "active")

    def __init__(self, callback: TickCallback) -> None:
        self.callback = callback
        self.active = True


# ---------------------------------------------------------------------------
# Feed
# ---------------------------------------------------------------------------

class CoinbaseTickerFeed:
    """
    Reference-counted multiplexer over the Coinbase ``ticker`` channel.

    Parameters
    ----------
    url : str
        WebSocket endpoint.
    connect : callable, optional
        ``websockets.connect`` compatible factory (injected in tests).
    reconnect_base, reconnect_cap : float
        Backoff schedule in seconds.
    jitter : float
        Relative jitter in ``[0, 1)`` applied to each delay; 0 disables it.
    sleep : callable, optional
        Awaitable sleep used for backoff.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        url: str = _WS_URL,
        connect: Optional[Callable] = None,
        reconnect_base: float = 1.0,
        reconnect_cap: float = 30.0,
        jitter: float = 0.0,
        sleep: Optional[Callable] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.url = url
        self.reconnect_base = reconnect_base
        self.reconnect_cap = reconnect_cap
        self.jitter = jitter
        self.logger = logger or logging.getLogger(__name__)
        self._connect = connect or websockets.connect
        self._sleep = sleep or asyncio.sleep

        self.state = FeedState.IDLE
        self.attempts = 0
        self._listeners: dict[str, list[_Listener]] = {}
        self._state_listeners: list[Callable[[FeedState], None]] = []
        self._task: Optional[asyncio.Task] = None
        self._ws = None
        self._pending_sends: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings, logger: Optional[logging.Logger] = None) -> "CoinbaseTickerFeed":
        return cls(
            url=settings.coinbase_ws_url,
            reconnect_base=settings.reconnect_base,
            reconnect_cap=settings.reconnect_cap,
            jitter=settings.reconnect_jitter,
            logger=logger,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def product_ids(self) -> list[str]:
        return list(self._listeners)

    def listener_count(self, product_id: str) -> int:
        return len(self._listeners.get(product_id, ()))

    def subscribe(self, product_id: str, callback: TickCallback) -> Callable[[], None]:
        """Register *callback* for *product_id*; returns an idempotent unsubscribe."""
        listener = _Listener(callback)
        listeners = self._listeners.setdefault(product_id, [])
        is_new = not listeners
        listeners.append(listener)

        if is_new:
            if self.state == FeedState.READY:
                self._send_soon({"type": "subscribe", "product_ids": [product_id], "channels": _CHANNELS})
            elif self._task is None:
                self._start()

        def unsubscribe() -> None:
            if not listener.active:
                return
            listener.active = False
            self._remove(product_id, listener)

        return unsubscribe

    def add_state_listener(self, callback: Callable[[FeedState], None]) -> Callable[[], None]:
        self._state_listeners.append(callback)

        def remove() -> None:
            if callback in self._state_listeners:
                self._state_listeners.remove(callback)

        return remove

    def close(self) -> None:
        """Drop every listener and close the socket."""
        for listeners in self._listeners.values():
            for listener in listeners:
                listener.active = False
        self._listeners.clear()
        self._stop()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _set_state(self, state: FeedState) -> None:
        if state == self.state:
            return
        self.state = state
        for callback in list(self._state_listeners):
            try:
                callback(state)
            except Exception as exc:
                self.logger.error(f"[coinbase-ws] state listener failed: {exc}", exc_info=True)

    def _start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run())

    def _stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
        self._ws = None
        self._set_state(FeedState.IDLE)

    def _remove(self, product_id: str, listener: _Listener) -> None:
        listeners = self._listeners.get(product_id)
        if listeners is None:
            return
        if listener in listeners:
            listeners.remove(listener)
        if listeners:
            return

        del self._listeners[product_id]
        if not self._listeners:
            self.logger.info("[coinbase-ws] no products left, closing")
            self._stop()
        elif self.state == FeedState.READY:
            self._send_soon({"type": "unsubscribe", "product_ids": [product_id], "channels": _CHANNELS})

    def _owns_loop(self) -> bool:
        return self._task is not None and self._task is asyncio.current_task()

    def _send_soon(self, frame: dict) -> None:
        task = asyncio.get_running_loop().create_task(self._send(frame))
        self._pending_sends.add(task)
        task.add_done_callback(self._pending_sends.discard)

    async def _send(self, frame: dict) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.send(json.dumps(frame))
        except ConnectionClosed as exc:
            # The replay on the next READY covers this product.
            self.logger.debug(f"[coinbase-ws] send dropped, socket closed: {exc}")

    async def _run(self) -> None:
        """Connect, replay subscriptions and listen, reconnecting while listeners remain."""
        while self._listeners and self._owns_loop():
            self._set_state(FeedState.CONNECTING)
            try:
                self.logger.info(f"[coinbase-ws] connecting ({len(self._listeners)} products) …")
                async with self._connect(self.url, ping_interval=20, ping_timeout=10) as ws:
                    if not self._owns_loop():
                        return
                    self._ws = ws
                    self.attempts = 0
                    self._set_state(FeedState.READY)
                    self.logger.info("[coinbase-ws] connected")
                    await ws.send(json.dumps({
                        "type": "subscribe",
                        "product_ids": self.product_ids,
                        "channels": _CHANNELS,
                    }))
                    await self._listen(ws)

            except ConnectionClosed as exc:
                self.logger.warning(f"[coinbase-ws] connection closed ({exc})")

            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
                self.logger.warning(f"[coinbase-ws] connection failed: {exc}")

            if not self._owns_loop():
                return
            self._ws = None
            if not self._listeners:
                break

            self._set_state(FeedState.CLOSED)
            delay = reconnect_delay(self.attempts, self.reconnect_base, self.reconnect_cap, self.jitter)
            self.attempts += 1
            self.logger.info(f"[coinbase-ws] reconnecting in {delay:.1f}s (attempt {self.attempts})")
            await self._sleep(delay)

        if self._owns_loop():
            self._task = None
            self._set_state(FeedState.IDLE)

    async def _listen(self, ws) -> None:
        """Receive messages and dispatch ticker events."""
        async for raw in ws:
            try:
                msg = json.loads(raw)
            except ValueError:
                self.logger.warning(f"[coinbase-ws] dropping non-JSON frame: {raw!r:.80}")
                continue
            if not isinstance(msg, dict):
                continue

            kind = msg.get("type")
            if kind == "ticker":
                self._dispatch(msg)
            elif kind == "error":
                self.logger.warning(f"[coinbase-ws] upstream error: {msg.get('message')} {msg.get('reason', '')}")

    def _dispatch(self, msg: dict) -> None:
        listeners = self._listeners.get(msg.get("product_id"))
        if not listeners:
            return
        tick = parse_ticker(msg)
        if tick is None:
            return
        for listener in list(listeners):
            if not listener.active:
                continue
            try:
                listener.callback(tick)
            except Exception as exc:
                self.logger.error(f"[coinbase-ws] listener failed for {tick.key}: {exc}", exc_info=True)
