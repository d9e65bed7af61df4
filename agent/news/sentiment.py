from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

import yfinance as yf

LOGGER = logging.getLogger(__name__)

POSITIVE_KEYWORDS = ("surge", "jump", "record", "beat", "profit", "gain", "bull", "upgrade", "buy", "strong")
NEGATIVE_KEYWORDS = ("drop", "fall", "plunge", "miss", "loss", "weak", "bear", "downgrade", "sell", "crash")


@dataclass(slots=True)
class SentimentResult:
    sentiment: str
    score: float
    headline_count: int
    headlines: list[str] = field(default_factory=list)


class SentimentClient(Protocol):
    def analyze_news(self, symbol: str) -> SentimentResult | None:
        ...


def score_headlines(titles: Iterable[str]) -> SentimentResult:
    titles = [title for title in titles if title]
    raw = 0
    for title in titles:
        lowered = title.lower()
        raw += sum(1 for word in POSITIVE_KEYWORDS if word in lowered)
        raw -= sum(1 for word in NEGATIVE_KEYWORDS if word in lowered)
    normalized = max(-1.0, min(1.0, raw / 3))
    sentiment = "NEUTRAL"
    if normalized > 0.3:
        sentiment = "POSITIVE"
    elif normalized < -0.3:
        sentiment = "NEGATIVE"
    return SentimentResult(
        sentiment=sentiment,
        score=normalized,
        headline_count=len(titles),
        headlines=titles[:3],
    )


def _headline_title(item: Any) -> str | None:
    if not isinstance(item, dict):
        return None
    # newer yfinance releases nest the article under "content"
    content = item.get("content")
    if isinstance(content, dict) and content.get("title"):
        return str(content["title"])
    title = item.get("title")
    return str(title) if title else None


class HeadlineSentimentClient:
    """Keyword sentiment over the latest Yahoo Finance headlines for a symbol."""

    def __init__(self, max_headlines: int = 5):
        self.max_headlines = max(1, int(max_headlines))

    def analyze_news(self, symbol: str) -> SentimentResult | None:
        try:
            news = yf.Ticker(symbol).news or []
        except Exception as exc:
            LOGGER.warning("Could not fetch news for %s: %s", symbol, exc)
            return None
        titles = [title for title in (_headline_title(item) for item in news) if title]
        result = score_headlines(titles[: self.max_headlines])
        LOGGER.debug("News %s: %s score=%.2f headlines=%d", symbol, result.sentiment, result.score, result.headline_count)
        return result
