from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from agent.config import VolatilityConfig
from agent.data.candles import Candle
from agent.data.market_data import MarketDataClient
from agent.strategy.indicators import atr, sma

LOGGER = logging.getLogger(__name__)

HIGH_VOLATILITY_PERCENT = 3.0
MEDIUM_VOLATILITY_PERCENT = 2.0
VOLUME_SPIKE_RATIO = 2.0
EXTREME_VOLUME_SPIKE_RATIO = 5.0


@dataclass(slots=True)
class VolatilityResult:
    symbol: str
    atr: float = 0.0
    atr_percent: float = 0.0
    volatility_level: str = "UNKNOWN"
    current_volume: float = 0.0
    avg_volume: float = 0.0
    volume_ratio: float = 1.0
    volume_signal: str = "NORMAL"
    today_range: float = 0.0
    atr_trend: float = 0.0
    current_price: float | None = None
    score: int = 0

    @property
    def is_default(self) -> bool:
        return self.volatility_level == "UNKNOWN"


def volatility_score(atr_percent: float, volume_ratio: float, atr_trend: float) -> int:
    score = 0
    if atr_percent >= 4:
        score += 30
    elif atr_percent >= 3:
        score += 25
    elif atr_percent >= 2:
        score += 15
    elif atr_percent >= 1:
        score += 5

    if volume_ratio >= 5:
        score += 25
    elif volume_ratio >= 3:
        score += 20
    elif volume_ratio >= 2:
        score += 10

    if atr_trend > 20:
        score += 10
    elif atr_trend < -20:
        score -= 5
    return max(0, min(100, score))


def classify_volatility(atr_percent: float) -> str:
    if atr_percent >= HIGH_VOLATILITY_PERCENT:
        return "HIGH"
    if atr_percent >= MEDIUM_VOLATILITY_PERCENT:
        return "MEDIUM"
    return "LOW"


def classify_volume(volume_ratio: float) -> str:
    if volume_ratio >= EXTREME_VOLUME_SPIKE_RATIO:
        return "EXTREME_SPIKE"
    if volume_ratio >= VOLUME_SPIKE_RATIO:
        return "SPIKE"
    return "NORMAL"


def analyze_volatility(symbol: str, candles: list[Candle], config: VolatilityConfig) -> VolatilityResult:
    """Volatility metrics from daily bars; neutral default when history is too short."""
    candles = [c for c in candles if c.close > 0 and c.high >= c.low]
    if len(candles) < config.atr_period:
        return VolatilityResult(symbol=symbol)

    atr_values = [value for value in atr(candles, config.atr_period) if value is not None]
    if not atr_values:
        return VolatilityResult(symbol=symbol)
    current_atr = atr_values[-1]
    last = candles[-1]
    atr_percent = current_atr / last.close * 100

    volumes = [c.volume for c in candles]
    avg_volume = sma(volumes, config.volume_window)[-1] or last.volume
    volume_ratio = last.volume / avg_volume if avg_volume > 0 else 1.0

    today_range = (last.high - last.low) / last.close * 100

    recent = atr_values[-config.trend_window :]
    atr_trend = 0.0
    if len(recent) >= 2 and recent[0] > 0:
        atr_trend = (recent[-1] - recent[0]) / recent[0] * 100

    return VolatilityResult(
        symbol=symbol,
        atr=current_atr,
        atr_percent=atr_percent,
        volatility_level=classify_volatility(atr_percent),
        current_volume=last.volume,
        avg_volume=avg_volume,
        volume_ratio=volume_ratio,
        volume_signal=classify_volume(volume_ratio),
        today_range=today_range,
        atr_trend=atr_trend,
        current_price=last.close,
        score=volatility_score(atr_percent, volume_ratio, atr_trend),
    )


class VolatilityAnalyzer:
    def __init__(
        self,
        market_data: MarketDataClient,
        config: VolatilityConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.market_data = market_data
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self._cache: dict[str, tuple[float, VolatilityResult]] = {}
        self._lock = threading.Lock()

    def analyze(self, symbol: str) -> VolatilityResult:
        key = symbol.strip().upper()
        now = self._clock()
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None and now - cached[0] < self.config.cache_seconds:
                return cached[1]

        try:
            candles = self.market_data.fetch_market_data(key, "1d", self.config.lookback_days)
        except Exception as exc:
            LOGGER.warning("Volatility %s: daily history unavailable: %s", key, exc)
            return VolatilityResult(symbol=key)
        if len(candles) < self.config.atr_period:
            LOGGER.debug("Volatility %s: %d daily bars, using default", key, len(candles))
            return VolatilityResult(symbol=key)

        result = analyze_volatility(key, candles, self.config)
        if not result.is_default:
            with self._lock:
                self._cache[key] = (self._clock(), result)
        return result

    def _scan(self, symbols: list[str], predicate: Callable[[VolatilityResult], bool]) -> list[VolatilityResult]:
        results: list[VolatilityResult] = []
        for symbol in symbols:
            analysis = self.analyze(symbol)
            if predicate(analysis):
                results.append(analysis)
            self._sleep(self.config.helper_delay_seconds)
        return results

    def filter_high_volatility(self, symbols: list[str], min_atr_percent: float = 2.0) -> list[VolatilityResult]:
        results = self._scan(symbols, lambda item: item.atr_percent >= min_atr_percent)
        return sorted(results, key=lambda item: item.score, reverse=True)

    def find_volume_spikes(self, symbols: list[str], min_ratio: float = 2.0) -> list[VolatilityResult]:
        results = self._scan(symbols, lambda item: item.volume_ratio >= min_ratio)
        return sorted(results, key=lambda item: item.volume_ratio, reverse=True)

    def find_optimal_day_trading(self, symbols: list[str]) -> list[VolatilityResult]:
        results = self._scan(
            symbols,
            lambda item: item.atr_percent >= 2.0 and (item.volume_ratio >= 1.5 or item.atr_trend > 0),
        )
        return sorted(results, key=lambda item: item.score, reverse=True)
