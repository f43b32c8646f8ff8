from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from market_feed.core.models import Tick


class Poller:
    """
    Periodically run a blocking quote fetch on a worker thread and forward
    every non-``None`` result to *on_tick* on the event loop.

    The first fetch happens immediately on :meth:`start`.  After
    :meth:`stop` no further callback fires; a fetch that is still in flight
    when the poller stops has its result dropped.

    Parameters
    ----------
    fetch : callable
        ``() -> Tick | None``; typically ``partial(adapter.fetch_quote, native_id)``.
    interval : float
        Seconds between the end of one fetch and the start of the next.
    on_tick : callable
        ``(tick: Tick) -> None``, called on the event-loop thread.
    name : str
        Label used in log lines.
    """

    def __init__(
        self,
        fetch: Callable[[], Optional[Tick]],
        interval: float,
        on_tick: Callable[[Tick], None],
        name: str = "poller",
        sleep: Optional[Callable] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.fetch = fetch
        self.interval = interval
        self.on_tick = on_tick
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self._sleep = sleep or asyncio.sleep
        self._task: Optional[asyncio.Task] = None
        self._active = False

    @property
    def running(self) -> bool:
        return self._active

    def start(self) -> None:
        """Start polling; must be called from the event-loop thread."""
        if self._active:
            return
        self._active = True
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        """Stop polling.  Idempotent."""
        self._active = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()

    async def _run(self) -> None:
        while self._active:
            try:
                tick = await asyncio.to_thread(self.fetch)
            except Exception as exc:
                self.logger.error(f"[{self.name}] fetch raised: {exc}", exc_info=True)
                tick = None

            if not self._active:
                return
            if tick is not None:
                try:
                    self.on_tick(tick)
                except Exception as exc:
                    self.logger.error(f"[{self.name}] tick handler failed: {exc}", exc_info=True)

            await self._sleep(self.interval)
