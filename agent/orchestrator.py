from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Protocol

from agent.clock import utc_now
from agent.config import AppConfig
from agent.data.broker_client import AccountBalance, BrokerAPIError, Holding
from agent.data.market_data import MarketDataClient, Quote
from agent.execution.orders import OrderExecutor
from agent.execution.position_manager import STOP_LOSS, TRAILING_STOP, PositionManager, PositionUpdate
from agent.news.sentiment import SentimentClient
from agent.strategy.indicators import TechnicalAnalysis, analyze_technicals
from agent.strategy.regime import MarketRegimeClassifier, RegimeSnapshot
from agent.strategy.scoring import Fundamentals, MultiFactorScorer, ScoreInputs, ScoringResult, rank
from agent.strategy.timeframes import MultiTimeframeAnalyzer
from agent.strategy.volatility import VolatilityAnalyzer, VolatilityResult

LOGGER = logging.getLogger(__name__)

BUY_RECOMMENDATIONS = frozenset({"STRONG_BUY", "BUY"})


class AccountClient(Protocol):
    def get_balance(self) -> AccountBalance:
        ...


@dataclass(slots=True)
class Candidate:
    symbol: str
    price: float
    volatility: VolatilityResult
    quote: Quote


@dataclass(slots=True)
class AnalyzedCandidate:
    candidate: Candidate
    technical: TechnicalAnalysis
    result: ScoringResult


@dataclass(slots=True)
class TradingStats:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    total_profit: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0

    @property
    def win_rate(self) -> float:
        closed = self.winning_trades + self.losing_trades
        if closed == 0:
            return 0.0
        return self.winning_trades / closed * 100

    def record_buy(self) -> None:
        self.total_trades += 1

    def record_sell(self, profit: float) -> None:
        self.total_trades += 1
        self.total_profit += profit
        if profit > 0:
            self.winning_trades += 1
            self.largest_win = max(self.largest_win, profit)
        elif profit < 0:
            self.losing_trades += 1
            self.largest_loss = min(self.largest_loss, profit)


@dataclass(slots=True)
class CycleReport:
    started_at: datetime
    regime: str | None = None
    skipped: str | None = None
    positions_managed: int = 0
    sells: int = 0
    candidates: int = 0
    analyzed: int = 0
    buys: int = 0
    passes: int = 0
    error: bool = False
    reason_codes: list[str] = field(default_factory=list)


def fundamentals_from_quote(quote: Quote | None) -> Fundamentals | None:
    if quote is None:
        return None
    return Fundamentals(pe_ratio=quote.pe_ratio, peg_ratio=quote.peg_ratio, market_cap=quote.market_cap)


class TradingOrchestrator:
    """
    One trading cycle: regime gate, position management, volatility screen,
    multi-factor analysis and a bounded sequence of buy passes.

    Only one cycle runs at a time; a trigger that arrives while a cycle is
    active is logged and dropped. Per-symbol screening fetches run in a
    thread pool, every decision and state mutation runs on the calling thread.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        market_data: MarketDataClient,
        account: AccountClient,
        executor: OrderExecutor,
        position_manager: PositionManager,
        regime: MarketRegimeClassifier,
        volatility: VolatilityAnalyzer,
        timeframes: MultiTimeframeAnalyzer,
        scorer: MultiFactorScorer,
        sentiment: SentimentClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.market_data = market_data
        self.account = account
        self.executor = executor
        self.position_manager = position_manager
        self.regime = regime
        self.volatility = volatility
        self.timeframes = timeframes
        self.scorer = scorer
        self.sentiment = sentiment
        self.stats = TradingStats()
        self._sleep = sleep
        self._cycle_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    def run_cycle(self) -> CycleReport | None:
        if not self._cycle_lock.acquire(blocking=False):
            LOGGER.warning("Trading cycle already in progress, trigger ignored")
            return None
        report = CycleReport(started_at=utc_now())
        try:
            LOGGER.info("Trading cycle started")
            self._run_cycle(report)
        except Exception:
            report.error = True
            LOGGER.exception("Unhandled trading cycle error")
        finally:
            self._cycle_lock.release()
        LOGGER.info(
            "Trading cycle finished regime=%s skipped=%s managed=%d sells=%d candidates=%d analyzed=%d buys=%d passes=%d",
            report.regime,
            report.skipped or "-",
            report.positions_managed,
            report.sells,
            report.candidates,
            report.analyzed,
            report.buys,
            report.passes,
        )
        return report

    def _run_cycle(self, report: CycleReport) -> None:
        self.position_manager.refresh()

        regime = self.regime.get_regime()
        report.regime = regime.regime
        LOGGER.info(
            "Market regime %s fear=%s benchmark=%s session=%s buy=%s sell=%s multiplier=%.2f%s",
            regime.regime,
            "n/a" if regime.fear_index is None else f"{regime.fear_index:.2f}",
            regime.benchmark_trend,
            regime.trading_session,
            regime.allow_buy,
            regime.allow_sell,
            regime.position_size_multiplier,
            f" | {regime.message}" if regime.messages else "",
        )
        if not regime.allow_buy and not regime.allow_sell:
            report.skipped = "TRADING_DISABLED"
            LOGGER.info("Market closed or conditions unfavorable, skipping cycle")
            return

        try:
            balance = self.account.get_balance()
        except BrokerAPIError as exc:
            report.skipped = "BALANCE_UNAVAILABLE"
            LOGGER.warning("Account balance unavailable, ending cycle: %s", exc)
            return
        LOGGER.info(
            "Balance buying_power=%.2f holdings=%d total_capital=%.2f",
            balance.buying_power,
            len(balance.holdings),
            balance.total_capital,
        )

        if regime.allow_sell:
            self.manage_positions(balance.holdings, report)

        if not regime.allow_buy:
            report.skipped = "BUY_DISABLED"
            LOGGER.info("Buying disabled by market regime, no new positions")
            return
        if balance.buying_power < self.config.execution.min_buying_power:
            report.skipped = "INSUFFICIENT_BUYING_POWER"
            LOGGER.info("Insufficient buying power for new positions (%.2f)", balance.buying_power)
            return

        universe = self.config.universe
        LOGGER.info("Screening %d symbols", len(universe))
        candidates = self.screen(universe, balance.buying_power)
        report.candidates = len(candidates)
        if not candidates:
            report.skipped = "NO_CANDIDATES"
            LOGGER.info("No suitable symbols after volatility screening")
            return

        analyzed = self.analyze_candidates(candidates)
        report.analyzed = len(analyzed)
        self.buy_passes(analyzed, regime, report)

    # Position management

    def manage_positions(self, holdings: list[Holding], report: CycleReport) -> None:
        self.position_manager.sync_positions(holdings)
        if not holdings:
            return
        LOGGER.info("Managing %d existing positions", len(holdings))
        for holding in holdings:
            try:
                self._manage_holding(holding, report)
            except Exception:
                LOGGER.exception("Error managing position %s", holding.symbol)
            self._sleep(self.config.execution.position_delay_seconds)

    def _manage_holding(self, holding: Holding, report: CycleReport) -> None:
        quote = self.market_data.fetch_quote(holding.symbol)
        if quote is None:
            LOGGER.warning("No quote for held %s, skipping", holding.symbol)
            return
        price = quote.price
        self.executor.mark_price(holding.symbol, price)

        if not self.position_manager.has_position(holding.symbol):
            self.position_manager.adopt_holding(holding, self.config.execution.adopted_position_score)
        position = self.position_manager.get_position(holding.symbol)
        entry_price = position.entry_price if position is not None else holding.avg_price

        update = self.position_manager.update_price(holding.symbol, price)
        if update is None:
            return
        report.positions_managed += 1

        if update.action in (STOP_LOSS, TRAILING_STOP):
            LOGGER.warning("[%s] %s: %s", update.action, holding.symbol, update.reason)
            if self._sell(holding.symbol, holding.quantity, price, quote, update.action, entry_price, report):
                self.position_manager.remove_position(holding.symbol)
            return

        if update.take_profit_level is not None:
            self._take_profit(holding, update, quote, entry_price, report)
            return

        reason = self.check_sell_signal(holding.symbol, quote)
        if reason is not None:
            LOGGER.info("[SIGNAL_SELL] %s: %s", holding.symbol, reason)
            if self._sell(holding.symbol, holding.quantity, price, quote, "SIGNAL_SELL", entry_price, report):
                self.position_manager.remove_position(holding.symbol)

    def _take_profit(
        self,
        holding: Holding,
        update: PositionUpdate,
        quote: Quote,
        entry_price: float,
        report: CycleReport,
    ) -> None:
        quantity = min(update.sell_quantity, holding.quantity)
        full_exit = update.full_exit or quantity >= holding.quantity
        if full_exit:
            quantity = holding.quantity
        LOGGER.info(
            "[%s] %s: selling %d of %d shares (%.0f%% of initial)",
            update.action,
            holding.symbol,
            quantity,
            holding.quantity,
            update.sell_percent or 0.0,
        )
        if not self._sell(holding.symbol, quantity, update.current_price, quote, update.action, entry_price, report):
            return
        if full_exit:
            self.position_manager.remove_position(holding.symbol)
        else:
            self.position_manager.reduce_position(holding.symbol, quantity)

    def check_sell_signal(self, symbol: str, quote: Quote | None) -> str | None:
        cfg = self.config.screening
        candles = self.market_data.fetch_market_data(symbol, cfg.analysis_interval, cfg.analysis_lookback_days)
        if len(candles) < cfg.analysis_min_bars:
            return None
        technical = analyze_technicals(candles)
        if technical is None:
            return None
        result = self.scorer.score(
            ScoreInputs(technical=technical, fundamentals=fundamentals_from_quote(quote)),
            symbol,
        )
        if result.recommendation == "STRONG_SELL":
            return f"Strong sell signal (score {result.total_score})"
        if result.recommendation == "SELL" and result.confidence >= self.config.execution.sell_confidence_threshold:
            return f"Sell signal with high confidence (score {result.total_score}, confidence {result.confidence}%)"
        return None

    def _sell(
        self,
        symbol: str,
        quantity: int,
        price: float,
        quote: Quote | None,
        reason: str,
        entry_price: float,
        report: CycleReport,
    ) -> bool:
        LOGGER.info("[SELL] %s x%d @ %.2f (%s)", symbol, quantity, price, reason)
        result = self.executor.execute_sell(symbol, quantity, price, quote.exchange if quote else None)
        if not result.success:
            LOGGER.warning("Sell %s failed: %s", symbol, result.message)
            return False
        self.stats.record_sell((price - entry_price) * quantity)
        report.sells += 1
        report.reason_codes.append(f"{reason}:{symbol}")
        return True

    # Screening and analysis

    def _screen_symbol(self, symbol: str, buying_power: float) -> Candidate | None:
        cfg = self.config.screening
        try:
            quote = self.market_data.fetch_quote(symbol)
            if quote is None or quote.price <= 0:
                return None
            if quote.price < cfg.min_price or quote.price > buying_power:
                return None
            volatility = self.volatility.analyze(symbol)
        except Exception as exc:
            LOGGER.warning("Screening %s failed: %s", symbol, exc)
            return None
        if volatility.atr_percent < cfg.min_atr_percent:
            return None
        return Candidate(symbol=symbol, price=quote.price, volatility=volatility, quote=quote)

    def screen(self, symbols: list[str], buying_power: float) -> list[Candidate]:
        cfg = self.config.screening
        candidates: list[Candidate] = []
        batches = [symbols[i : i + cfg.batch_size] for i in range(0, len(symbols), cfg.batch_size)]
        with ThreadPoolExecutor(max_workers=cfg.max_workers) as pool:
            for index, batch in enumerate(batches):
                if index:
                    self._sleep(cfg.batch_delay_seconds)
                for candidate in pool.map(lambda symbol: self._screen_symbol(symbol, buying_power), batch):
                    if candidate is not None:
                        candidates.append(candidate)
                if len(candidates) >= cfg.max_candidates:
                    break
        candidates.sort(key=lambda item: item.volatility.score, reverse=True)
        LOGGER.info("Found %d volatile affordable symbols", min(len(candidates), cfg.max_candidates))
        return candidates[: cfg.max_candidates]

    def analyze_candidate(self, candidate: Candidate) -> AnalyzedCandidate | None:
        cfg = self.config.screening
        candles = self.market_data.fetch_market_data(candidate.symbol, cfg.analysis_interval, cfg.analysis_lookback_days)
        if len(candles) < cfg.analysis_min_bars:
            LOGGER.debug("%s: %d intraday bars, skipping analysis", candidate.symbol, len(candles))
            return None
        technical = analyze_technicals(candles)
        if technical is None:
            return None

        sentiment = None
        if technical.score > 0 and self.sentiment is not None:
            sentiment = self.sentiment.analyze_news(candidate.symbol)

        result = self.scorer.score(
            ScoreInputs(
                technical=technical,
                fundamentals=fundamentals_from_quote(candidate.quote),
                sentiment=sentiment,
                volatility=candidate.volatility,
                timeframes=self.timeframes.analyze(candidate.symbol),
            ),
            candidate.symbol,
        )
        LOGGER.info(
            "%s: score %d (%s) confidence %d%% atr=%.2f%%",
            candidate.symbol,
            result.total_score,
            result.recommendation,
            result.confidence,
            candidate.volatility.atr_percent,
        )
        return AnalyzedCandidate(candidate=candidate, technical=technical, result=result)

    def analyze_candidates(self, candidates: list[Candidate]) -> list[AnalyzedCandidate]:
        analyzed: dict[str, AnalyzedCandidate] = {}
        for candidate in candidates:
            try:
                item = self.analyze_candidate(candidate)
            except Exception as exc:
                LOGGER.warning("Analysis of %s failed: %s", candidate.symbol, exc)
                continue
            if item is not None:
                analyzed[candidate.symbol] = item
        return [analyzed[result.symbol] for result in rank([item.result for item in analyzed.values()])]

    # Buying

    def buy_passes(self, analyzed: list[AnalyzedCandidate], regime: RegimeSnapshot, report: CycleReport) -> None:
        cfg = self.config.execution
        attempted: set[str] = set()
        while report.passes < cfg.max_screening_passes and report.buys < cfg.max_trades_per_cycle:
            report.passes += 1
            try:
                balance = self.account.get_balance()
            except BrokerAPIError as exc:
                LOGGER.warning("Balance refresh failed, stopping buy passes: %s", exc)
                break
            if not self._buy_pass(analyzed, balance, regime, attempted):
                break
            report.buys += 1
            self.stats.record_buy()
            self._sleep(cfg.trade_delay_seconds)
        if report.buys >= cfg.max_trades_per_cycle:
            LOGGER.info("Max trades per cycle (%d) reached", cfg.max_trades_per_cycle)
        LOGGER.info("Executed %d buys in %d passes", report.buys, report.passes)

    def _buy_pass(
        self,
        analyzed: list[AnalyzedCandidate],
        balance: AccountBalance,
        regime: RegimeSnapshot,
        attempted: set[str],
    ) -> bool:
        remaining = balance.buying_power
        held = {holding.symbol.upper() for holding in balance.holdings} | attempted
        for item in analyzed:
            candidate = item.candidate
            result = item.result
            if result.recommendation not in BUY_RECOMMENDATIONS:
                continue
            if candidate.symbol in held or self.position_manager.has_position(candidate.symbol):
                continue
            if remaining < candidate.price:
                continue

            size = self.position_manager.calculate_position_size(
                balance.total_capital,
                candidate.price,
                result.total_score,
                regime.position_size_multiplier,
                candidate.volatility.atr or None,
            )
            quantity = min(size.quantity, int(remaining // candidate.price))
            if quantity <= 0:
                continue
            check = self.position_manager.can_add_position(
                balance.holdings,
                balance.total_capital,
                quantity * candidate.price,
            )
            if not check.allowed:
                LOGGER.warning("[SKIP] %s: %s", candidate.symbol, check.reason)
                continue

            LOGGER.info(
                "[BUY] %s x%d @ %.2f (score %d, confidence %d%%, target %.2f%%)",
                candidate.symbol,
                quantity,
                candidate.price,
                result.total_score,
                result.confidence,
                size.target_percent,
            )
            order = self.executor.execute_buy(candidate.symbol, quantity, candidate.price, candidate.quote.exchange)
            if not order.success:
                LOGGER.warning("Buy %s failed: %s", candidate.symbol, order.message)
                attempted.add(candidate.symbol)
                continue
            attempted.add(candidate.symbol)
            self.position_manager.add_position(candidate.symbol, candidate.price, quantity, result.total_score)
            return True
        return False
