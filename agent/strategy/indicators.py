from __future__ import annotations

import math
from dataclasses import dataclass

from agent.data.candles import Candle


def sma(values: list[float], period: int) -> list[float | None]:
    if period <= 0:
        raise ValueError("period must be > 0")
    output: list[float | None] = [None] * len(values)
    if len(values) < period:
        return output
    window_sum = sum(values[:period])
    output[period - 1] = window_sum / period
    for i in range(period, len(values)):
        window_sum += values[i] - values[i - period]
        output[i] = window_sum / period
    return output


def ema(values: list[float], period: int) -> list[float | None]:
    if not values:
        return []
    if period <= 0:
        raise ValueError("period must be > 0")
    output: list[float | None] = [None] * len(values)
    if len(values) < period:
        return output
    seed = sum(values[:period]) / period
    output[period - 1] = seed
    alpha = 2 / (period + 1)
    prev = seed
    for i in range(period, len(values)):
        prev = (values[i] - prev) * alpha + prev
        output[i] = prev
    return output


def wilder(values: list[float], period: int) -> list[float | None]:
    """Wilder smoothing (RMA): SMA seed, then ``prev + (x - prev) / period``."""
    if period <= 0:
        raise ValueError("period must be > 0")
    output: list[float | None] = [None] * len(values)
    if len(values) < period:
        return output
    prev = sum(values[:period]) / period
    output[period - 1] = prev
    for i in range(period, len(values)):
        prev = prev + (values[i] - prev) / period
        output[i] = prev
    return output


def rsi(values: list[float], period: int = 14) -> list[float | None]:
    output: list[float | None] = [None] * len(values)
    if len(values) <= period:
        return output
    gains = [max(0.0, values[i] - values[i - 1]) for i in range(1, len(values))]
    losses = [max(0.0, values[i - 1] - values[i]) for i in range(1, len(values))]
    avg_gain = wilder(gains, period)
    avg_loss = wilder(losses, period)
    for i, (gain, loss) in enumerate(zip(avg_gain, avg_loss)):
        if gain is None or loss is None:
            continue
        if loss == 0:
            output[i + 1] = 100.0 if gain > 0 else 50.0
        else:
            output[i + 1] = 100 - 100 / (1 + gain / loss)
    return output


@dataclass(slots=True)
class MacdSeries:
    line: list[float | None]
    signal: list[float | None]
    histogram: list[float | None]


def macd(values: list[float], fast: int = 12, slow: int = 26, signal_period: int = 9) -> MacdSeries:
    fast_ema = ema(values, fast)
    slow_ema = ema(values, slow)
    line: list[float | None] = [
        f - s if f is not None and s is not None else None
        for f, s in zip(fast_ema, slow_ema)
    ]
    start = next((i for i, value in enumerate(line) if value is not None), None)
    signal: list[float | None] = [None] * len(values)
    if start is not None:
        defined = [float(value) for value in line[start:] if value is not None]
        for offset, value in enumerate(ema(defined, signal_period)):
            signal[start + offset] = value
    histogram: list[float | None] = [
        m - s if m is not None and s is not None else None
        for m, s in zip(line, signal)
    ]
    return MacdSeries(line=line, signal=signal, histogram=histogram)


@dataclass(slots=True)
class BollingerSeries:
    upper: list[float | None]
    middle: list[float | None]
    lower: list[float | None]


def bollinger(values: list[float], period: int = 20, num_std: float = 2.0) -> BollingerSeries:
    middle = sma(values, period)
    upper: list[float | None] = [None] * len(values)
    lower: list[float | None] = [None] * len(values)
    for i, mean in enumerate(middle):
        if mean is None:
            continue
        window = values[i - period + 1 : i + 1]
        std = math.sqrt(sum((x - mean) ** 2 for x in window) / period)
        upper[i] = mean + num_std * std
        lower[i] = mean - num_std * std
    return BollingerSeries(upper=upper, middle=middle, lower=lower)


def true_ranges(candles: list[Candle]) -> list[float]:
    if not candles:
        return []
    output: list[float] = []
    prev_close = candles[0].close
    for candle in candles:
        output.append(
            max(
                candle.high - candle.low,
                abs(candle.high - prev_close),
                abs(candle.low - prev_close),
            )
        )
        prev_close = candle.close
    return output


def atr(candles: list[Candle], period: int = 14) -> list[float | None]:
    if period <= 0:
        raise ValueError("period must be > 0")
    return wilder(true_ranges(candles), period)


def latest_value(values: list[float | None]) -> float | None:
    for value in reversed(values):
        if value is not None:
            return value
    return None


@dataclass(slots=True)
class IndicatorSnapshot:
    ma5: float | None = None
    ma10: float | None = None
    ma20: float | None = None
    rsi: float | None = None
    macd_line: float | None = None
    macd_signal: float | None = None
    macd_histogram: float | None = None
    bb_upper: float | None = None
    bb_middle: float | None = None
    bb_lower: float | None = None
    atr: float | None = None


def compute_indicators(candles: list[Candle]) -> IndicatorSnapshot:
    """Latest indicator values; each is None while its period is not filled."""
    values = [candle.close for candle in candles]
    macd_series = macd(values)
    bands = bollinger(values)
    return IndicatorSnapshot(
        ma5=sma(values, 5)[-1] if values else None,
        ma10=sma(values, 10)[-1] if values else None,
        ma20=sma(values, 20)[-1] if values else None,
        rsi=rsi(values)[-1] if values else None,
        macd_line=macd_series.line[-1] if values else None,
        macd_signal=macd_series.signal[-1] if values else None,
        macd_histogram=macd_series.histogram[-1] if values else None,
        bb_upper=bands.upper[-1] if values else None,
        bb_middle=bands.middle[-1] if values else None,
        bb_lower=bands.lower[-1] if values else None,
        atr=atr(candles)[-1] if candles else None,
    )


def derive_signals(indicators: IndicatorSnapshot, price: float) -> list[str]:
    signals: list[str] = []
    hist = indicators.macd_histogram
    line = indicators.macd_line
    if hist is not None and line is not None:
        if hist > 0 and line > 0:
            signals.append("MACD_BULLISH")
        elif hist > 0:
            signals.append("MACD_REVERSAL")
        elif hist < 0:
            signals.append("MACD_BEARISH")
    if indicators.bb_upper is not None and price > indicators.bb_upper:
        signals.append("BB_OVERBOUGHT")
    elif indicators.bb_lower is not None and price < indicators.bb_lower:
        signals.append("BB_OVERSOLD")
    if indicators.rsi is not None:
        if indicators.rsi < 30:
            signals.append("RSI_OVERSOLD")
        elif indicators.rsi > 70:
            signals.append("RSI_OVERBOUGHT")
    if (
        indicators.ma5 is not None
        and indicators.ma10 is not None
        and indicators.ma20 is not None
        and indicators.ma5 > indicators.ma10 > indicators.ma20
    ):
        signals.append("MA_UPTREND")
    return signals


TECHNICAL_SIGNAL_WEIGHTS = {
    "MACD_BULLISH": 10,
    "BB_OVERBOUGHT": -20,
    "BB_OVERSOLD": 20,
    "RSI_OVERSOLD": 15,
    "RSI_OVERBOUGHT": -15,
    "MA_UPTREND": 10,
}


@dataclass(slots=True)
class TechnicalAnalysis:
    indicators: IndicatorSnapshot
    signals: list[str]
    current_price: float
    score: int = 0
    stop_loss: float | None = None
    take_profit: float | None = None


def stop_and_target(price: float, atr_value: float | None) -> tuple[float | None, float | None]:
    if atr_value is None:
        return None, None
    return price - 1.5 * atr_value, price + 2 * atr_value


def analyze_technicals(candles: list[Candle]) -> TechnicalAnalysis | None:
    if not candles:
        return None
    price = candles[-1].close
    indicators = compute_indicators(candles)
    signals = derive_signals(indicators, price)
    stop_loss, take_profit = stop_and_target(price, indicators.atr)
    return TechnicalAnalysis(
        indicators=indicators,
        signals=signals,
        current_price=price,
        score=sum(TECHNICAL_SIGNAL_WEIGHTS.get(signal, 0) for signal in signals),
        stop_loss=stop_loss,
        take_profit=take_profit,
    )
