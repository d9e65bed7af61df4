from __future__ import annotations

import math
from dataclasses import dataclass, field

from agent.config import ScoringConfig
from agent.news.sentiment import SentimentResult
from agent.strategy.indicators import TechnicalAnalysis
from agent.strategy.timeframes import MultiTimeframeResult
from agent.strategy.volatility import VolatilityResult

BULLISH_SIGNALS = frozenset({"MACD_BULLISH", "MA_UPTREND", "RSI_OVERSOLD", "BB_OVERSOLD"})
BEARISH_SIGNALS = frozenset({"MACD_BEARISH", "RSI_OVERBOUGHT", "BB_OVERBOUGHT"})


@dataclass(slots=True)
class Fundamentals:
    pe_ratio: float | None = None
    peg_ratio: float | None = None
    market_cap: float | None = None


@dataclass(slots=True)
class ScoreInputs:
    """Inputs for one symbol. ``None`` means the factor was not computed and scores 0."""

    technical: TechnicalAnalysis
    fundamentals: Fundamentals | None = None
    sentiment: SentimentResult | None = None
    volatility: VolatilityResult | None = None
    timeframes: MultiTimeframeResult | None = None


@dataclass(slots=True)
class ScoreBreakdown:
    technical: int = 0
    momentum: int = 0
    fundamental: int = 0
    sentiment: int = 0
    volatility: int = 0

    @property
    def total(self) -> int:
        return self.technical + self.momentum + self.fundamental + self.sentiment + self.volatility


@dataclass(slots=True)
class ScoringResult:
    total_score: int
    raw_score: int
    breakdown: ScoreBreakdown
    recommendation: str
    confidence: int
    symbol: str = ""
    reason_codes: list[str] = field(default_factory=list)


def _clamp(value: float, min_value: float, max_value: float) -> float:
    return max(min_value, min(max_value, value))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def technical_score(technical: TechnicalAnalysis) -> int:
    signals = set(technical.signals)
    score = 0
    if "MACD_BULLISH" in signals:
        score += 10
    elif "MACD_REVERSAL" in signals:
        score += 5
    elif "MACD_BEARISH" in signals:
        score -= 10
    if "BB_OVERSOLD" in signals:
        score += 8
    elif "BB_OVERBOUGHT" in signals:
        score -= 8
    if "RSI_OVERSOLD" in signals:
        score += 7
    elif "RSI_OVERBOUGHT" in signals:
        score -= 7
    return int(_clamp(score, -25, 25))


def momentum_score(technical: TechnicalAnalysis, timeframes: MultiTimeframeResult | None) -> int:
    ind = technical.indicators
    score = 0
    if "MA_UPTREND" in technical.signals:
        score += 20
    else:
        if ind.ma5 is not None and ind.ma10 is not None and ind.ma5 > ind.ma10:
            score += 8
        if ind.ma10 is not None and ind.ma20 is not None and ind.ma10 > ind.ma20:
            score += 7
    if ind.macd_histogram is not None:
        if ind.macd_histogram > 0:
            score += 10
        elif ind.macd_histogram < 0:
            score -= 10
    if ind.ma20 is not None:
        score += 10 if technical.current_price > ind.ma20 else -10
    if timeframes is not None:
        short_trend = timeframes.short_term.trend
        long_trend = timeframes.long_term.trend
        if short_trend == "UP" and long_trend == "UP":
            score += 10
        elif short_trend == "DOWN" and long_trend == "DOWN":
            score -= 10
    return int(_clamp(score, -40, 40))


def fundamental_score(fundamentals: Fundamentals | None) -> int:
    if fundamentals is None:
        return 0
    score = 0
    pe = fundamentals.pe_ratio
    if pe is not None:
        if 0 < pe < 20:
            score += 5
        elif 20 <= pe < 35:
            score += 3
    peg = fundamentals.peg_ratio
    if peg is not None:
        if 0 < peg < 1:
            score += 5
        elif 1 <= peg < 2:
            score += 3
    return int(_clamp(score, 0, 10))


def sentiment_score(sentiment: SentimentResult | None) -> int:
    if sentiment is None:
        return 0
    score: float = 0
    if sentiment.sentiment == "POSITIVE":
        score = 15
    elif sentiment.sentiment == "NEGATIVE":
        score = -15
    if sentiment.headline_count >= 5:
        score = _round_half_up(score * 1.2)
    elif sentiment.headline_count <= 1:
        score = _round_half_up(score * 0.5)
    return int(_clamp(score, -15, 15))


def volatility_factor_score(volatility: VolatilityResult | None) -> int:
    if volatility is None:
        return 0
    score = 0
    if volatility.atr_percent >= 3:
        score = 10
    elif volatility.atr_percent >= 2:
        score = 7
    elif volatility.atr_percent >= 1:
        score = 4
    if volatility.volume_ratio > 2:
        score += 5
    return int(_clamp(score, 0, 10))


class MultiFactorScorer:
    def __init__(self, config: ScoringConfig | None = None):
        self.config = config or ScoringConfig()

    def recommendation(self, score: float) -> str:
        thresholds = self.config
        if score >= thresholds.strong_buy:
            return "STRONG_BUY"
        if score >= thresholds.buy:
            return "BUY"
        if score <= thresholds.strong_sell:
            return "STRONG_SELL"
        if score <= thresholds.sell:
            return "SELL"
        return "HOLD"

    def confidence(
        self,
        score: float,
        technical: TechnicalAnalysis,
        sentiment: SentimentResult | None,
    ) -> int:
        confidence = 50
        if score >= 85 or score <= 15:
            confidence += 20
        elif score >= 75 or score <= 25:
            confidence += 10

        bullish = sum(1 for signal in technical.signals if signal in BULLISH_SIGNALS)
        bearish = sum(1 for signal in technical.signals if signal in BEARISH_SIGNALS)
        if bullish >= 3:
            confidence += 15
        elif bullish >= 2:
            confidence += 10
        if bearish >= 3:
            confidence += 15
        elif bearish >= 2:
            confidence += 10

        if sentiment is not None and sentiment.sentiment != "NEUTRAL" and technical.score != 0:
            technical_bullish = technical.score > 0
            news_bullish = sentiment.sentiment == "POSITIVE"
            if technical_bullish == news_bullish:
                confidence += 10
        return min(100, confidence)

    def score(self, inputs: ScoreInputs, symbol: str = "") -> ScoringResult:
        breakdown = ScoreBreakdown(
            technical=technical_score(inputs.technical),
            momentum=momentum_score(inputs.technical, inputs.timeframes),
            fundamental=fundamental_score(inputs.fundamentals),
            sentiment=sentiment_score(inputs.sentiment),
            volatility=volatility_factor_score(inputs.volatility),
        )
        raw = breakdown.total
        total = int(_clamp(raw + 50, 0, 100))
        return ScoringResult(
            total_score=total,
            raw_score=raw,
            breakdown=breakdown,
            recommendation=self.recommendation(total),
            confidence=self.confidence(total, inputs.technical, inputs.sentiment),
            symbol=symbol,
            reason_codes=list(inputs.technical.signals),
        )


def rank_key(result: ScoringResult) -> tuple[int, int, int, str]:
    # descending on the numeric fields, ascending on symbol
    return (-result.total_score, -result.confidence, -result.breakdown.volatility, result.symbol)


def rank(results: list[ScoringResult]) -> list[ScoringResult]:
    return sorted(results, key=rank_key)
