from __future__ import annotations

from datetime import datetime, timedelta, timezone

from agent.config import TimeframeConfig
from agent.data.candles import Candle
from agent.strategy.timeframes import (
    MultiTimeframeAnalyzer,
    TimeframeTrend,
    alignment,
    recommendation,
    timeframe_trend,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 500.0

    def __call__(self) -> float:
        return self.now


class FakeMarketData:
    def __init__(self, series: dict[str, list[float]]):
        self.series = series
        self.calls: list[tuple[str, str]] = []

    def fetch_market_data(self, symbol: str, interval: str, lookback_days: int) -> list[Candle]:
        self.calls.append((symbol, interval))
        start = datetime(2026, 8, 3, tzinfo=timezone.utc)
        return [
            Candle(timestamp=start + timedelta(hours=i), open=c, high=c, low=c, close=c)
            for i, c in enumerate(self.series.get(interval, []))
        ]

    def fetch_quote(self, symbol: str):
        return None


def _rising(count: int = 60) -> list[float]:
    return [100 * 1.01**i for i in range(count)]


def _falling(count: int = 60) -> list[float]:
    return [100 * 0.99**i for i in range(count)]


def test_rising_series_is_up_trend() -> None:
    trend = timeframe_trend(_rising())

    assert trend.trend == "UP"
    assert trend.score == 60
    assert trend.ma10 > trend.ma20


def test_falling_series_is_down_trend() -> None:
    trend = timeframe_trend(_falling())

    assert trend.trend == "DOWN"
    assert trend.score < 0


def test_short_history_is_unknown() -> None:
    trend = timeframe_trend(_rising(19))

    assert trend.trend == "UNKNOWN"
    assert trend.score == 0
    assert trend.price is None


def test_alignment_and_recommendation_table() -> None:
    up = TimeframeTrend(trend="UP")
    down = TimeframeTrend(trend="DOWN")
    flat = TimeframeTrend(trend="NEUTRAL")
    unknown = TimeframeTrend()

    assert (alignment(up, up), recommendation(up, up)) == ("ALIGNED", "STRONG_BUY")
    assert (alignment(down, down), recommendation(down, down)) == ("ALIGNED", "STRONG_SELL")
    assert recommendation(flat, flat) == "NEUTRAL"
    assert (alignment(flat, up), recommendation(flat, up)) == ("PARTIAL", "BUY_ON_DIP")
    assert recommendation(up, down) == "CAUTION"
    assert recommendation(down, flat) == "NEUTRAL"
    assert recommendation(flat, down) == "SELL_ON_RALLY"
    assert (alignment(up, unknown), recommendation(up, unknown)) == ("UNKNOWN", "NEUTRAL")


def test_analyzer_combines_timeframes_and_caches() -> None:
    market = FakeMarketData({"1h": _rising(), "1d": _rising()})
    clock = FakeClock()
    analyzer = MultiTimeframeAnalyzer(market, TimeframeConfig(cache_seconds=300), clock=clock)

    result = analyzer.analyze("msft")

    assert result.symbol == "MSFT"
    assert result.alignment == "ALIGNED"
    assert result.recommendation == "STRONG_BUY"
    assert market.calls == [("MSFT", "1h"), ("MSFT", "1d")]

    clock.now += 299
    analyzer.analyze("MSFT")
    assert len(market.calls) == 2

    clock.now += 2
    analyzer.analyze("MSFT")
    assert len(market.calls) == 4


class FlakyMarketData(FakeMarketData):
    def fetch_market_data(self, symbol: str, interval: str, lookback_days: int) -> list[Candle]:
        if interval == "1h":
            raise ConnectionError("network down")
        return super().fetch_market_data(symbol, interval, lookback_days)


def test_fetch_error_leaves_that_timeframe_unknown() -> None:
    analyzer = MultiTimeframeAnalyzer(FlakyMarketData({"1d": _rising()}), TimeframeConfig())

    result = analyzer.analyze("AMD")

    assert result.short_term.trend == "UNKNOWN"
    assert result.long_term.trend == "UP"
    assert result.alignment == "UNKNOWN"
    assert result.recommendation == "NEUTRAL"
