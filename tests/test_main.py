from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

import main
from agent.config import AppConfig
from agent.data.candles import Candle
from agent.data.market_data import Quote
from agent.storage.models import PositionRecord
from agent.storage.position_store import JsonFilePositionStore
from agent.strategy.regime import RegimeSnapshot


class QuoteOnlyMarketData:
    def __init__(self, prices: dict[str, float]):
        self.prices = prices

    def fetch_quote(self, symbol: str) -> Quote | None:
        price = self.prices.get(symbol)
        if price is None:
            return None
        return Quote(symbol=symbol, price=price, exchange="NMS")

    def fetch_market_data(self, symbol: str, interval: str, lookback_days: int) -> list[Candle]:
        return []


class SellOnlyRegime:
    def get_regime(self) -> RegimeSnapshot:
        return RegimeSnapshot(
            regime="NEUTRAL",
            fear_index=18.0,
            fear_index_change=0.0,
            benchmark_trend="NEUTRAL",
            trading_session="CORE",
            session_recommendation="ACTIVE",
            allow_buy=False,
            allow_sell=True,
            position_size_multiplier=1.0,
        )


def _record(symbol: str, quantity: int, entry_price: float) -> PositionRecord:
    return PositionRecord(
        symbol=symbol,
        entry_price=entry_price,
        quantity=quantity,
        score=72.0,
        entry_time=datetime(2026, 10, 19, 14, 0, tzinfo=timezone.utc),
        highest_price=entry_price,
        lowest_price=entry_price,
        current_stop_loss=entry_price * 0.98,
    )


def test_dry_run_account_restores_tracked_positions() -> None:
    config = AppConfig.model_validate({})
    account = main.build_dry_run_account(config, None, {"XYZ": _record("XYZ", 7, 25.0)})

    balance = account.get_balance()

    assert balance.buying_power == pytest.approx(config.execution.dry_run_buying_power)
    assert [(h.symbol, h.quantity, h.avg_price) for h in balance.holdings] == [("XYZ", 7, 25.0)]


def test_dry_run_restart_keeps_persisted_positions(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("POSITIONS_PATH", raising=False)
    positions_path = tmp_path / "positions.json"
    JsonFilePositionStore(positions_path).save(_record("XYZ", 10, 100.0))
    config = AppConfig.model_validate({"storage": {"positions_path": str(positions_path)}})

    orchestrator = main.build_orchestrator(config, broker=None, dry_run=True, root=tmp_path)
    orchestrator.market_data = QuoteOnlyMarketData({"XYZ": 100.0})
    orchestrator.regime = SellOnlyRegime()
    orchestrator._sleep = lambda _seconds: None

    report = orchestrator.run_cycle()

    assert report is not None
    assert report.skipped == "BUY_DISABLED"
    assert report.positions_managed == 1
    assert orchestrator.position_manager.has_position("XYZ")
    assert "XYZ" in JsonFilePositionStore(positions_path).load()
