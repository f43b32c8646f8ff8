"""
Live Tickers Job: watch the configured holdings and log every price update.

    [1] INIT     Load config, build settings, setup logger
    [2] WATCH    Resolve holdings and arm Coinbase stream / REST pollers
    [3] REPORT   Log coalesced ticker batches plus a periodic heartbeat

Usage::

    market-feed-live [config.json]
    python -m market_feed.jobs.live_tickers_job [config.json]

Without an argument the job reads config/market_feed.json from the working
directory.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from market_feed.aggregators.live import WatchHandle, watch_tickers
from market_feed.config import Settings
from market_feed.feeds.ticker_table import TickerTable
from market_feed.utils.logger import setup_logger

# Relative to the working directory the job is started from.
DEFAULT_CONFIG = Path("config") / "market_feed.json"


def load_config(config_path: Path) -> dict:
    """Read and return the JSON configuration file."""
    with open(config_path, "r") as f:
        return json.load(f)


def log_file(settings: Settings) -> Path:
    """Log file from the settings; a relative path resolves against the working directory."""
    return Path(settings.log_path).expanduser().resolve()


def init(config_path: Optional[Path] = None) -> tuple[dict, Settings, logging.Logger]:
    config_path = Path(config_path or DEFAULT_CONFIG)
    config = load_config(config_path)

    settings = Settings.from_dict(config.get("settings", {}), source=str(config_path))

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logger = setup_logger("market_feed", log_file(settings), level=log_level)

    logger.info("=" * 60)
    logger.info("Live Tickers Job starting")
    logger.info("=" * 60)
    logger.info(f"Config loaded from: {config_path}")
    logger.info(f"Holdings: {', '.join(h['symbol'] for h in config.get('holdings', []))}")
    return config, settings, logger


def format_batch(table: TickerTable, batch: dict) -> list[str]:
    lines = []
    for key in sorted(batch):
        tick = batch[key]
        status = table.status(key)
        lines.append(
            f"{key:<8} {tick.price:>14,.4f}  {tick.change24h:+6.2f}%  "
            f"{tick.source.value:<9} {status.value if status else '-'}"
        )
    return lines


async def heartbeat(table: TickerTable, logger: logging.Logger, interval_sec: int = 60):
    """Periodic heartbeat so we know the job is alive."""
    while True:
        await asyncio.sleep(interval_sec)
        logger.info(f"Heartbeat: {len(table)} keys priced.")


async def report(handle: WatchHandle, logger: logging.Logger) -> None:
    async for batch in handle.tickers.changes():
        for line in format_batch(handle.tickers, batch):
            logger.info(line)


def run_live_tickers_job(config_path: Optional[Path] = None) -> None:
    config, settings, logger = init(config_path)

    async def watch_and_report():
        handle = watch_tickers(config.get("holdings", []), settings=settings)
        logger.info(f"Watching {len(handle.keys)} keys: {', '.join(handle.keys)}")
        try:
            await asyncio.gather(
                heartbeat(handle.tickers, logger, config.get("heartbeat_sec", 60)),
                report(handle, logger),
            )
        finally:
            handle.stop()

    try:
        asyncio.run(watch_and_report())
    except KeyboardInterrupt:
        logger.info("Live tickers job stopped by user.")


def main() -> None:
    run_live_tickers_job(Path(sys.argv[1]) if len(sys.argv) > 1 else None)


if __name__ == "__main__":
    main()
