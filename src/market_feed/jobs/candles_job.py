"""Candles Job

Fetches candle history for the requests listed in the job config and logs a
per-key summary (venue, candle count, covered range, last close).

The job:
1. Reads configuration from the path given (default: config/market_feed.json
   under the working directory)
2. Builds the requests, defaulting ``since`` to ``lookback_days`` ago
3. Fetches every timeframe in ``timeframes`` through the History Aggregator
4. Logs which keys came back and which no venue could serve
"""

import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from market_feed.aggregators.history import HistoryAggregator
from market_feed.config import Settings
from market_feed.core.models import CandleSeries
from market_feed.jobs.live_tickers_job import DEFAULT_CONFIG, load_config, log_file
from market_feed.utils.logger import setup_logger


def build_requests(config: dict, now: Optional[float] = None) -> list[dict]:
    """Candle requests from the config, with ``since`` filled from ``lookback_days``."""
    now = time.time() if now is None else now
    lookback_days = config.get("lookback_days")
    requests = []
    for entry in config.get("candle_requests", []):
        request = dict(entry)
        if request.get("since") is None and lookback_days:
            request["since"] = int(now - lookback_days * 86400)
        requests.append(request)
    return requests


def summarize(series: CandleSeries) -> str:
    first = datetime.fromtimestamp(series.candles[0].ts, tz=timezone.utc)
    last = datetime.fromtimestamp(series.candles[-1].ts, tz=timezone.utc)
    return (
        f"{series.key:<8} {series.timeframe.value:<4} {series.source.value:<9} "
        f"{len(series):>5} candles  {first:%Y-%m-%d %H:%M} -> {last:%Y-%m-%d %H:%M}  "
        f"close={series.candles[-1].close:,.4f}"
    )


def run_candles_job(config_path: Optional[Path] = None) -> dict:
    """Main job execution function.

    Args:
        config_path: Path to configuration file (defaults to config/market_feed.json)

    Returns:
        ``{timeframe: {key: CandleSeries}}``
    """
    config_path = Path(config_path or DEFAULT_CONFIG)
    config = load_config(config_path)
    settings = Settings.from_dict(config.get("settings", {}), source=str(config_path))

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logger = setup_logger("market_feed", log_file(settings), level=log_level)

    requests = build_requests(config)
    timeframes = config.get("timeframes", ["1H"])
    aggregator = HistoryAggregator(settings=settings)

    logger.info("=" * 60)
    logger.info("Candles Job")
    logger.info("=" * 60)
    logger.info(f"Requests: {', '.join(r['key'] for r in requests)}")
    logger.info(f"Timeframes: {', '.join(timeframes)}")

    results = {}
    for timeframe in timeframes:
        started = time.monotonic()
        series_by_key = aggregator.fetch_all(requests, timeframe)
        results[timeframe] = series_by_key
        for key in sorted(series_by_key):
            logger.info(summarize(series_by_key[key]))
        logger.info(
            f"{timeframe}: {len(series_by_key)}/{len(requests)} keys in {time.monotonic() - started:.1f}s"
        )

    return results


def main() -> None:
    run_candles_job(Path(sys.argv[1]) if len(sys.argv) > 1 else None)


if __name__ == "__main__":
    main()
