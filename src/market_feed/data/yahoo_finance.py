import logging
from datetime import datetime
from typing import Optional

import pandas as pd
import yfinance as yf

logger = logging.getLogger(__name__)


def download_ticker_data(
    ticker: str,
    start: datetime,
    end: datetime,
    interval: str = "1d"
) -> Optional[pd.DataFrame]:
    """
    Download historical price bars for a ticker from Yahoo Finance.

    Args:
        ticker: Stock ticker symbol (e.g., 'MSTR', 'SPY')
        start: Window start (UTC)
        end: Window end (UTC, exclusive)
        interval: Bar interval ('1m', '5m', '15m', '1h', '1d')

    Returns:
        DataFrame indexed by bar start with Open/High/Low/Close/Volume
        columns, or None if the download fails or is empty
    """
    try:
        data = yf.download(
            ticker,
            start=start,
            end=end,
            interval=interval,
            progress=False,
            auto_adjust=True
        )
    except Exception as e:
        logger.warning(f"Error downloading data for {ticker}: {e}")
        return None

    if data is None or data.empty:
        logger.info(f"No data found for {ticker} ({interval})")
        return None

    # Flatten multi-level columns to remove ticker from column names
    if isinstance(data.columns, pd.MultiIndex):
        data.columns = data.columns.get_level_values(0)

    return data


def frame_timestamps(data: pd.DataFrame) -> list[int]:
    """Bar start of every row as epoch seconds (naive indexes are taken as UTC)."""
    index = pd.DatetimeIndex(data.index)
    if index.tz is None:
        index = index.tz_localize("UTC")
    return [int(ts.timestamp()) for ts in index]
