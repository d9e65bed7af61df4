from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import yfinance as yf

from agent.data.candles import Candle, candles_from_frame

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Quote:
    symbol: str
    price: float
    exchange: str | None = None
    pe_ratio: float | None = None
    peg_ratio: float | None = None
    market_cap: float | None = None
    change_percent: float | None = None


class MarketDataClient(Protocol):
    def fetch_market_data(self, symbol: str, interval: str, lookback_days: int) -> list[Candle]:
        ...

    def fetch_quote(self, symbol: str) -> Quote | None:
        ...


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if parsed != parsed:
        return None
    return parsed


def quote_from_info(symbol: str, info: dict[str, Any]) -> Quote | None:
    price = None
    for key in ("regularMarketPrice", "currentPrice", "previousClose"):
        price = _optional_float(info.get(key))
        if price is not None and price > 0:
            break
    if price is None or price <= 0:
        return None
    return Quote(
        symbol=symbol,
        price=price,
        exchange=str(info.get("exchange")) if info.get("exchange") else None,
        pe_ratio=_optional_float(info.get("trailingPE")),
        peg_ratio=_optional_float(info.get("pegRatio") or info.get("trailingPegRatio")),
        market_cap=_optional_float(info.get("marketCap")),
        change_percent=_optional_float(info.get("regularMarketChangePercent")),
    )


class YahooMarketDataClient:
    """Market data from Yahoo Finance. Failures are logged and reported as empty/None."""

    def fetch_market_data(self, symbol: str, interval: str, lookback_days: int) -> list[Candle]:
        try:
            frame = yf.Ticker(symbol).history(period=f"{int(lookback_days)}d", interval=interval)
        except Exception as exc:
            LOGGER.warning("Could not fetch %s history for %s: %s", interval, symbol, exc)
            return []
        candles = candles_from_frame(frame)
        if not candles:
            LOGGER.debug("No %s history for %s", interval, symbol)
        return candles

    def fetch_quote(self, symbol: str) -> Quote | None:
        try:
            info = yf.Ticker(symbol).info or {}
        except Exception as exc:
            LOGGER.warning("Could not fetch quote for %s: %s", symbol, exc)
            return None
        quote = quote_from_info(symbol, info)
        if quote is None:
            LOGGER.debug("Quote for %s has no usable price", symbol)
        return quote
