from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from pathlib import Path

from dotenv import load_dotenv

from agent.clock import is_shutdown_time, utc_now
from agent.config import AppConfig, load_config
from agent.data.broker_client import BrokerAPIError, BrokerClient, Holding, TokenCache
from agent.data.market_data import YahooMarketDataClient
from agent.execution.account import DryRunAccount
from agent.execution.orders import OrderExecutor
from agent.execution.position_manager import PositionManager
from agent.news.sentiment import HeadlineSentimentClient
from agent.orchestrator import TradingOrchestrator, TradingStats
from agent.storage.models import PositionRecord
from agent.storage.position_store import build_position_store
from agent.strategy.regime import MarketRegimeClassifier
from agent.strategy.scoring import MultiFactorScorer
from agent.strategy.timeframes import MultiTimeframeAnalyzer
from agent.strategy.volatility import VolatilityAnalyzer

LOGGER = logging.getLogger("stock_agent")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="US equities day-trading agent")
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--dry-run", action="store_true", help="No order transmission, fills against a simulated account")
    mode_group.add_argument("--live", action="store_true", help="Transmit orders through the brokerage API (TRADING_MODE selects REAL or PAPER)")

    parser.add_argument("--once", action="store_true", help="Run a single trading cycle and exit.")
    parser.add_argument("--test-order", default=None, metavar="SYMBOL", help="Place one order for SYMBOL immediately and exit.")
    parser.add_argument("--test-side", choices=["BUY", "SELL"], default="BUY")
    parser.add_argument("--test-qty", type=int, default=1)
    parser.add_argument("--test-price", type=float, default=None)

    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    return parser.parse_args()


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def _resolve_path(root: Path, value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else root / path


def build_broker_client(config: AppConfig, live: bool, root: Path) -> BrokerClient | None:
    app_key = os.getenv("KIS_APP_KEY")
    app_secret = os.getenv("KIS_APP_SECRET")
    account_no = os.getenv("KIS_ACCOUNT_NO")

    if live and not (app_key and app_secret and account_no):
        raise RuntimeError("Live mode requires KIS_APP_KEY, KIS_APP_SECRET and KIS_ACCOUNT_NO in .env")
    if not (app_key and app_secret and account_no):
        LOGGER.warning("Brokerage credentials missing. Using the simulated dry-run account only.")
        return None
    token_cache_path = _resolve_path(root, os.getenv("TOKEN_CACHE_PATH", config.broker.token_cache_path))
    return BrokerClient(
        base_url=os.getenv("KIS_BASE_URL", config.broker.base_url),
        app_key=app_key,
        app_secret=app_secret,
        account_no=account_no,
        account_code=os.getenv("KIS_ACCOUNT_CODE", config.broker.account_code),
        trading_mode=os.getenv("TRADING_MODE", config.broker.trading_mode),
        timeout_seconds=config.broker.timeout_seconds,
        token_cache=TokenCache(token_cache_path),
        token_expiry_buffer_seconds=config.broker.token_expiry_buffer_seconds,
        rate_limit_rps=float(os.getenv("KIS_RATE_LIMIT_RPS", str(config.broker.rate_limit_rps))),
        rate_limit_burst=int(os.getenv("KIS_RATE_LIMIT_BURST", str(config.broker.rate_limit_burst))),
        request_max_attempts=int(os.getenv("KIS_REQUEST_MAX_ATTEMPTS", str(config.broker.request_max_attempts))),
        backoff_base_seconds=float(os.getenv("KIS_BACKOFF_BASE_SECONDS", str(config.broker.backoff_base_seconds))),
        backoff_max_seconds=float(os.getenv("KIS_BACKOFF_MAX_SECONDS", str(config.broker.backoff_max_seconds))),
    )


def build_dry_run_account(
    config: AppConfig,
    broker: BrokerClient | None,
    positions: dict[str, PositionRecord] | None = None,
) -> DryRunAccount:
    if broker is not None:
        try:
            balance = broker.get_balance()
        except BrokerAPIError as exc:
            LOGGER.warning("Could not seed dry-run account from broker balance: %s", exc)
        else:
            LOGGER.info("Dry-run account seeded from broker balance %.2f", balance.buying_power)
            return DryRunAccount(balance.buying_power, balance.holdings)
    holdings = [
        Holding(
            symbol=record.symbol,
            quantity=record.quantity,
            avg_price=record.entry_price,
            current_price=record.entry_price,
        )
        for record in (positions or {}).values()
    ]
    if holdings:
        LOGGER.info("Dry-run account restored %d tracked positions", len(holdings))
    return DryRunAccount(config.execution.dry_run_buying_power, holdings)


def build_orchestrator(
    config: AppConfig,
    *,
    broker: BrokerClient | None,
    dry_run: bool,
    root: Path,
) -> TradingOrchestrator:
    market_data = YahooMarketDataClient()
    positions_path = _resolve_path(root, os.getenv("POSITIONS_PATH", config.storage.positions_path))
    store = build_position_store(config.storage.backend, positions_path)
    position_manager = PositionManager(
        store,
        trailing=config.trailing_stop,
        take_profit=config.take_profit,
        sizing=config.position_sizing,
    )
    account = build_dry_run_account(config, broker, position_manager.all_positions()) if dry_run else None
    executor = OrderExecutor(broker=broker, dry_run=dry_run, account=account)
    return TradingOrchestrator(
        config=config,
        market_data=market_data,
        account=account if account is not None else broker,
        executor=executor,
        position_manager=position_manager,
        regime=MarketRegimeClassifier(market_data, config.regime),
        volatility=VolatilityAnalyzer(market_data, config.volatility),
        timeframes=MultiTimeframeAnalyzer(market_data, config.timeframes),
        scorer=MultiFactorScorer(config.scoring),
        sentiment=HeadlineSentimentClient(),
    )


def place_single_test_order(orchestrator: TradingOrchestrator, symbol: str, side: str, quantity: int, price: float | None) -> None:
    symbol = symbol.strip().upper()
    quote = orchestrator.market_data.fetch_quote(symbol)
    order_price = price if price is not None else (quote.price if quote is not None else None)
    if order_price is None:
        raise RuntimeError(f"Cannot place test order: no price for {symbol}")
    exchange = quote.exchange if quote is not None else None
    if side == "BUY":
        result = orchestrator.executor.execute_buy(symbol, quantity, order_price, exchange)
    else:
        result = orchestrator.executor.execute_sell(symbol, quantity, order_price, exchange)
    LOGGER.info(
        "Test order %s %s x%d @ %.2f success=%s id=%s message=%s",
        side,
        symbol,
        quantity,
        order_price,
        result.success,
        result.order_id,
        result.message,
    )


def log_trading_stats(stats: TradingStats) -> None:
    LOGGER.info(
        "Trading stats trades=%d wins=%d losses=%d win_rate=%.2f%% profit=%.2f largest_win=%.2f largest_loss=%.2f",
        stats.total_trades,
        stats.winning_trades,
        stats.losing_trades,
        stats.win_rate,
        stats.total_profit,
        stats.largest_win,
        stats.largest_loss,
    )


def run() -> None:
    args = parse_args()
    dry_run = not args.live
    load_dotenv()
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))

    root = Path(__file__).resolve().parent
    config_path = _resolve_path(root, args.config)
    config = load_config(config_path)
    if not config.universe:
        LOGGER.warning("No symbols configured in universe; screening will find nothing")

    broker = build_broker_client(config, live=args.live, root=root)
    orchestrator = build_orchestrator(config, broker=broker, dry_run=dry_run, root=root)
    LOGGER.info(
        "Starting agent | mode=%s | symbols=%d | loop=%ss | shutdown=%s %s",
        orchestrator.executor.mode_prefix,
        len(config.universe),
        config.schedule.loop_seconds,
        config.schedule.shutdown_time or "-",
        config.schedule.shutdown_timezone,
    )

    if args.test_order:
        place_single_test_order(orchestrator, args.test_order, args.test_side, args.test_qty, args.test_price)
        LOGGER.info("Test-order mode completed. Exiting.")
        return

    if args.once:
        orchestrator.run_cycle()
        log_trading_stats(orchestrator.stats)
        return

    stop_event = threading.Event()

    def _stop(signum: int, _frame: object) -> None:
        LOGGER.info("Received signal %s, shutting down.", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _stop)

    while not stop_event.is_set():
        if is_shutdown_time(utc_now(), config.schedule.shutdown_time, config.schedule.shutdown_timezone):
            LOGGER.info("Scheduled shutdown time %s reached.", config.schedule.shutdown_time)
            break
        try:
            orchestrator.run_cycle()
        except Exception:
            LOGGER.exception("Unhandled cycle error")
        stop_event.wait(config.schedule.loop_seconds)

    log_trading_stats(orchestrator.stats)
    LOGGER.info("Agent stopped.")


if __name__ == "__main__":
    run()
