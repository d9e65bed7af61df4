from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import pandas as pd


@dataclass(slots=True)
class Candle:
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


def _to_utc(value: Any) -> datetime:
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts.tz_convert("UTC").to_pydatetime().astimezone(timezone.utc)


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    try:
        return math.isnan(float(value))
    except (TypeError, ValueError):
        return True


def candles_from_frame(frame: pd.DataFrame | None) -> list[Candle]:
    """Convert a yfinance-style OHLCV frame into candles, dropping incomplete rows."""
    if frame is None or frame.empty:
        return []
    output: list[Candle] = []
    for index, row in frame.iterrows():
        fields = [row.get("Open"), row.get("High"), row.get("Low"), row.get("Close")]
        if any(_is_missing(value) for value in fields):
            continue
        volume = row.get("Volume")
        output.append(
            Candle(
                timestamp=_to_utc(index),
                open=float(fields[0]),
                high=float(fields[1]),
                low=float(fields[2]),
                close=float(fields[3]),
                volume=0.0 if _is_missing(volume) else float(volume),
            )
        )
    return sorted(output, key=lambda c: c.timestamp)
