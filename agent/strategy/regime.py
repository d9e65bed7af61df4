from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from agent.clock import VENUE_TIMEZONE, is_trading_weekday, minutes_since_midnight, utc_now
from agent.config import RegimeConfig
from agent.data.market_data import MarketDataClient
from agent.strategy.indicators import sma

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class TradingSession:
    name: str
    volatility: str
    recommendation: str
    allow_buy: bool
    allow_sell: bool


# (start_minute, end_minute, session) in venue local time
_SESSIONS: tuple[tuple[int, int, TradingSession], ...] = (
    (240, 570, TradingSession("PREMARKET", "HIGH", "AVOID", allow_buy=False, allow_sell=False)),
    (570, 630, TradingSession("OPENING", "VERY_HIGH", "WAIT", allow_buy=False, allow_sell=True)),
    (630, 900, TradingSession("CORE", "NORMAL", "ACTIVE", allow_buy=True, allow_sell=True)),
    (900, 960, TradingSession("POWER_HOUR", "HIGH", "CLOSE_POSITIONS", allow_buy=False, allow_sell=True)),
    (960, 1200, TradingSession("AFTERMARKET", "HIGH", "AVOID", allow_buy=True, allow_sell=True)),
)
_CLOSED = TradingSession("CLOSED", "NONE", "WAIT", allow_buy=False, allow_sell=False)


def trading_session(now: datetime, timezone_name: str = VENUE_TIMEZONE) -> TradingSession:
    if not is_trading_weekday(now, timezone_name):
        return _CLOSED
    minutes = minutes_since_midnight(now, timezone_name)
    for start, end, session in _SESSIONS:
        if start <= minutes < end:
            return session
    return _CLOSED


@dataclass(slots=True)
class BenchmarkTrend:
    trend: str
    price: float | None = None
    ma5: float | None = None
    ma20: float | None = None
    strength: float = 0.0


def benchmark_trend(closes: list[float]) -> BenchmarkTrend:
    if len(closes) < 20:
        return BenchmarkTrend(trend="UNKNOWN")
    price = closes[-1]
    ma20 = sma(closes, 20)[-1]
    ma5 = sma(closes, 5)[-1]
    if ma20 is None or ma5 is None:
        return BenchmarkTrend(trend="UNKNOWN")
    trend = "NEUTRAL"
    if price > ma20 and ma5 > ma20:
        trend = "BULLISH"
    elif price < ma20 and ma5 < ma20:
        trend = "BEARISH"
    strength = (price - ma20) / ma20 * 100 if ma20 else 0.0
    return BenchmarkTrend(trend=trend, price=price, ma5=ma5, ma20=ma20, strength=strength)


@dataclass(slots=True)
class RegimeSnapshot:
    regime: str
    fear_index: float | None
    fear_index_change: float | None
    benchmark_trend: str
    trading_session: str
    session_recommendation: str
    allow_buy: bool
    allow_sell: bool
    position_size_multiplier: float
    trend_strength: float = 0.0
    benchmark_price: float | None = None
    benchmark_ma20: float | None = None
    fail_safe: bool = False
    messages: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return " | ".join(self.messages)


@dataclass(slots=True)
class TradeGate:
    allowed: bool
    regime: str
    reason: str = ""
    position_size_multiplier: float = 0.0


def determine_regime(
    *,
    fear_index: float,
    fear_index_change: float | None,
    trend: BenchmarkTrend,
    session: TradingSession,
    min_multiplier: float = 0.2,
    max_multiplier: float = 2.0,
) -> RegimeSnapshot:
    regime = "NEUTRAL"
    allow_buy = True
    allow_sell = True
    multiplier = 1.0
    messages: list[str] = []

    if fear_index >= 30:
        regime = "EXTREME_FEAR"
        allow_buy = False
        multiplier = 0.3
        messages.append(f"VIX {fear_index:.2f}: extreme fear, no buy")
    elif fear_index >= 25:
        regime = "FEAR"
        multiplier = 0.5
        messages.append(f"VIX {fear_index:.2f}: fear, reduced size")
    elif fear_index >= 20:
        regime = "CAUTIOUS"
        multiplier = 0.75
        messages.append(f"VIX {fear_index:.2f}: cautious")
    elif fear_index < 15:
        regime = "GREED"
        multiplier = 1.2
        messages.append(f"VIX {fear_index:.2f}: low fear")

    if trend.trend == "BEARISH":
        if regime != "EXTREME_FEAR":
            regime = "BEARISH"
        allow_buy = False
        multiplier *= 0.5
        messages.append("Benchmark below MA20: downtrend, no buy")
    elif trend.trend == "BULLISH":
        if regime in {"NEUTRAL", "GREED"}:
            regime = "BULLISH"
        multiplier *= 1.2
        messages.append("Benchmark above MA20: uptrend")

    if not session.allow_buy:
        allow_buy = False
    if not session.allow_sell:
        allow_sell = False
    if session.name != "CORE":
        messages.append(f"Session {session.name}: {session.recommendation}")

    multiplier = max(min_multiplier, min(max_multiplier, multiplier))
    return RegimeSnapshot(
        regime=regime,
        fear_index=fear_index,
        fear_index_change=fear_index_change,
        benchmark_trend=trend.trend,
        trading_session=session.name,
        session_recommendation=session.recommendation,
        allow_buy=allow_buy,
        allow_sell=allow_sell,
        position_size_multiplier=multiplier,
        trend_strength=trend.strength,
        benchmark_price=trend.price,
        benchmark_ma20=trend.ma20,
        messages=messages,
    )


class MarketDataUnavailable(RuntimeError):
    """Fear index or benchmark history could not be fetched."""


class MarketRegimeClassifier:
    """
    Whole-market risk gate.

    Combines the fear index tier, the benchmark MA5/MA20 trend and the venue
    session into buy/sell permissions and a position size multiplier. The
    snapshot is cached for ``cache_seconds``; any fetch failure produces an
    uncached fail-safe snapshot with buying disabled.
    """

    def __init__(
        self,
        market_data: MarketDataClient,
        config: RegimeConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utc_now,
    ):
        self.market_data = market_data
        self.config = config
        self._clock = clock
        self._now = now
        self._cached: tuple[float, RegimeSnapshot] | None = None
        self._lock = threading.Lock()

    def current_session(self) -> TradingSession:
        return trading_session(self._now(), self.config.venue_timezone)

    def get_regime(self) -> RegimeSnapshot:
        with self._lock:
            if self._cached is not None and self._clock() - self._cached[0] < self.config.cache_seconds:
                return self._cached[1]
            try:
                snapshot = self._analyze()
            except Exception as exc:
                LOGGER.warning("Market regime unavailable, using fail-safe: %s", exc)
                return self._fail_safe(str(exc))
            self._cached = (self._clock(), snapshot)
            return snapshot

    def _analyze(self) -> RegimeSnapshot:
        quote = self.market_data.fetch_quote(self.config.fear_index_symbol)
        if quote is None:
            raise MarketDataUnavailable(f"no quote for {self.config.fear_index_symbol}")
        candles = self.market_data.fetch_market_data(
            self.config.benchmark_symbol,
            "1d",
            self.config.benchmark_lookback_days,
        )
        if not candles:
            raise MarketDataUnavailable(f"no history for {self.config.benchmark_symbol}")
        return determine_regime(
            fear_index=quote.price,
            fear_index_change=quote.change_percent,
            trend=benchmark_trend([c.close for c in candles]),
            session=self.current_session(),
            min_multiplier=self.config.min_multiplier,
            max_multiplier=self.config.max_multiplier,
        )

    def _fail_safe(self, reason: str) -> RegimeSnapshot:
        session = self.current_session()
        return RegimeSnapshot(
            regime="NEUTRAL",
            fear_index=None,
            fear_index_change=None,
            benchmark_trend="UNKNOWN",
            trading_session=session.name,
            session_recommendation=session.recommendation,
            allow_buy=False,
            allow_sell=True,
            position_size_multiplier=self.config.fail_safe_multiplier,
            fail_safe=True,
            messages=[f"Market data unavailable ({reason}), buy disabled"],
        )

    def can_trade(self, action: str) -> TradeGate:
        snapshot = self.get_regime()
        side = action.strip().upper()
        if side == "BUY" and not snapshot.allow_buy:
            return TradeGate(allowed=False, regime=snapshot.regime, reason=snapshot.message)
        if side == "SELL" and not snapshot.allow_sell:
            return TradeGate(allowed=False, regime=snapshot.regime, reason=snapshot.message)
        return TradeGate(
            allowed=True,
            regime=snapshot.regime,
            position_size_multiplier=snapshot.position_size_multiplier,
        )
