from __future__ import annotations

import pytest

from agent.data.broker_client import BrokerAPIError, Holding, OrderResult
from agent.execution.account import DryRunAccount
from agent.execution.orders import OrderExecutor, map_exchange


class FakeBroker:
    trading_mode = "REAL"

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.orders: list[tuple[str, str, int, float, str]] = []

    def place_order(self, symbol: str, side: str, quantity: int, price: float, exchange: str = "NASD") -> OrderResult:
        if self.error is not None:
            raise self.error
        self.orders.append((symbol, side, quantity, price, exchange))
        return OrderResult(success=True, message="accepted", order_id="0001")


@pytest.mark.parametrize(
    ("code", "expected"),
    [("NYQ", "NYSE"), ("nys", "NYSE"), ("ASE", "AMEX"), ("NMS", "NASD"), ("NGM", "NASD"), (None, "NASD")],
)
def test_map_exchange(code: str | None, expected: str) -> None:
    assert map_exchange(code) == expected


def test_dry_run_buy_fills_simulated_account() -> None:
    account = DryRunAccount(1000.0)
    executor = OrderExecutor(broker=None, dry_run=True, account=account)

    result = executor.execute_buy("aapl", 2, 150.0, "NMS")

    assert result.success is True
    assert result.order_id.startswith("DRY-")
    balance = account.get_balance()
    assert balance.buying_power == pytest.approx(700.0)
    assert balance.holdings[0].symbol == "AAPL"
    assert balance.holdings[0].exchange == "NASD"


def test_dry_run_rejects_unaffordable_buy() -> None:
    account = DryRunAccount(100.0)
    executor = OrderExecutor(broker=None, dry_run=True, account=account)

    result = executor.execute_buy("AAPL", 1, 150.0)

    assert result.success is False
    assert account.get_balance().holdings == []


def test_dry_run_never_calls_broker() -> None:
    broker = FakeBroker()
    executor = OrderExecutor(broker=broker, dry_run=True, account=DryRunAccount(1000.0))

    executor.execute_buy("AAPL", 1, 10.0)

    assert broker.orders == []
    assert executor.mode_prefix == "DRY"


def test_invalid_quantity_fails_without_order() -> None:
    broker = FakeBroker()
    executor = OrderExecutor(broker=broker, dry_run=False)

    assert executor.execute_buy("AAPL", 0, 10.0).success is False
    assert executor.execute_sell("AAPL", 1, 0.0).success is False
    assert broker.orders == []


def test_live_order_routes_to_broker_exchange() -> None:
    broker = FakeBroker()
    executor = OrderExecutor(broker=broker, dry_run=False)

    result = executor.execute_sell(" ko ", 3, 61.5, "NYQ")

    assert result.success is True
    assert broker.orders == [("KO", "SELL", 3, 61.5, "NYSE")]
    assert executor.mode_prefix == "REAL"


def test_live_broker_error_becomes_failed_result() -> None:
    executor = OrderExecutor(broker=FakeBroker(error=BrokerAPIError("HTTP 400")), dry_run=False)

    result = executor.execute_buy("AAPL", 1, 10.0)

    assert result.success is False
    assert "HTTP 400" in result.message


def test_live_mode_requires_broker() -> None:
    with pytest.raises(ValueError):
        OrderExecutor(broker=None, dry_run=False)


def test_account_averages_and_reduces_holdings() -> None:
    account = DryRunAccount(1000.0)
    account.apply_fill("XYZ", "BUY", 2, 100.0)
    account.apply_fill("XYZ", "BUY", 2, 110.0)

    holding = account.get_balance().holdings[0]
    assert holding.quantity == 4
    assert holding.avg_price == pytest.approx(105.0)

    account.mark("XYZ", 126.0)
    assert account.get_balance().holdings[0].profit_rate == pytest.approx(20.0)

    account.apply_fill("XYZ", "SELL", 4, 126.0)
    balance = account.get_balance()
    assert balance.holdings == []
    assert balance.buying_power == pytest.approx(1000.0 - 420.0 + 504.0)


def test_account_rejects_oversell() -> None:
    account = DryRunAccount(0.0, [Holding(symbol="XYZ", quantity=1, avg_price=10.0, current_price=10.0)])

    with pytest.raises(ValueError):
        account.apply_fill("XYZ", "SELL", 2, 10.0)


def test_account_balance_is_a_copy() -> None:
    account = DryRunAccount(0.0, [Holding(symbol="XYZ", quantity=1, avg_price=10.0, current_price=10.0)])

    account.get_balance().holdings[0].quantity = 99

    assert account.get_balance().holdings[0].quantity == 1
