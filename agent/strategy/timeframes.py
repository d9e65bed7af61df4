from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from agent.config import TimeframeConfig
from agent.data.market_data import MarketDataClient
from agent.strategy.indicators import macd, rsi, sma

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class TimeframeTrend:
    trend: str = "UNKNOWN"
    score: int = 0
    price: float | None = None
    ma10: float | None = None
    ma20: float | None = None
    rsi: float | None = None
    macd_histogram: float | None = None


@dataclass(slots=True)
class MultiTimeframeResult:
    symbol: str
    short_term: TimeframeTrend
    long_term: TimeframeTrend
    alignment: str
    recommendation: str


def timeframe_trend(closes: list[float], min_bars: int = 20) -> TimeframeTrend:
    if len(closes) < min_bars:
        return TimeframeTrend()
    price = closes[-1]
    ma10 = sma(closes, 10)[-1]
    ma20 = sma(closes, 20)[-1]
    rsi_value = rsi(closes)[-1]
    hist = macd(closes).histogram[-1]

    trend = "NEUTRAL"
    score = 0
    if ma10 is not None and ma20 is not None:
        if price > ma10 > ma20:
            trend = "UP"
            score += 30
        elif price < ma10 < ma20:
            trend = "DOWN"
            score -= 30
    if hist is not None and hist > 0:
        score += 20
        if trend == "NEUTRAL":
            trend = "UP"
    elif hist is not None and hist < 0:
        score -= 20
        if trend == "NEUTRAL":
            trend = "DOWN"
    if rsi_value is not None:
        if rsi_value > 50:
            score += 10
        elif rsi_value < 50:
            score -= 10
    return TimeframeTrend(
        trend=trend,
        score=score,
        price=price,
        ma10=ma10,
        ma20=ma20,
        rsi=rsi_value,
        macd_histogram=hist,
    )


def alignment(short_term: TimeframeTrend, long_term: TimeframeTrend) -> str:
    if short_term.trend == "UNKNOWN" or long_term.trend == "UNKNOWN":
        return "UNKNOWN"
    if short_term.trend == long_term.trend:
        return "ALIGNED"
    if "NEUTRAL" in (short_term.trend, long_term.trend):
        return "PARTIAL"
    return "DIVERGENT"


def recommendation(short_term: TimeframeTrend, long_term: TimeframeTrend) -> str:
    state = alignment(short_term, long_term)
    if state == "ALIGNED":
        if short_term.trend == "UP":
            return "STRONG_BUY"
        if short_term.trend == "DOWN":
            return "STRONG_SELL"
    if state == "PARTIAL":
        if long_term.trend == "UP":
            return "BUY_ON_DIP"
        if long_term.trend == "DOWN":
            return "SELL_ON_RALLY"
    if state == "DIVERGENT":
        return "CAUTION"
    return "NEUTRAL"


class MultiTimeframeAnalyzer:
    def __init__(
        self,
        market_data: MarketDataClient,
        config: TimeframeConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.market_data = market_data
        self.config = config
        self._clock = clock
        self._cache: dict[str, tuple[float, MultiTimeframeResult]] = {}
        self._lock = threading.Lock()

    def _trend(self, symbol: str, interval: str, lookback_days: int) -> TimeframeTrend:
        try:
            candles = self.market_data.fetch_market_data(symbol, interval, lookback_days)
        except Exception as exc:
            LOGGER.warning("MTF %s: %s history unavailable: %s", symbol, interval, exc)
            return TimeframeTrend()
        return timeframe_trend([c.close for c in candles], self.config.min_bars)

    def analyze(self, symbol: str) -> MultiTimeframeResult:
        key = symbol.strip().upper()
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None and self._clock() - cached[0] < self.config.cache_seconds:
                return cached[1]

        short_term = self._trend(key, self.config.short_interval, self.config.short_lookback_days)
        long_term = self._trend(key, self.config.long_interval, self.config.long_lookback_days)
        result = MultiTimeframeResult(
            symbol=key,
            short_term=short_term,
            long_term=long_term,
            alignment=alignment(short_term, long_term),
            recommendation=recommendation(short_term, long_term),
        )
        LOGGER.debug(
            "MTF %s: short=%s long=%s alignment=%s",
            key,
            short_term.trend,
            long_term.trend,
            result.alignment,
        )
        with self._lock:
            self._cache[key] = (self._clock(), result)
        return result
