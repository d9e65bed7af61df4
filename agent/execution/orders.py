from __future__ import annotations

import logging
import uuid

from agent.data.broker_client import BrokerAPIError, BrokerClient, OrderResult
from agent.execution.account import DryRunAccount

LOGGER = logging.getLogger(__name__)

_NYSE_CODES = frozenset({"NYQ", "NYS", "NYSE"})
_AMEX_CODES = frozenset({"ASE", "AMS", "AMEX"})


def map_exchange(exchange: str | None) -> str:
    """Quote exchange code to the brokerage order exchange; NASD when unknown."""
    code = (exchange or "").strip().upper()
    if code in _NYSE_CODES:
        return "NYSE"
    if code in _AMEX_CODES:
        return "AMEX"
    return "NASD"


class OrderExecutor:
    def __init__(
        self,
        *,
        broker: BrokerClient | None,
        dry_run: bool,
        account: DryRunAccount | None = None,
    ):
        if not dry_run and broker is None:
            raise ValueError("Live execution requires a broker client")
        self.broker = broker
        self.dry_run = dry_run
        self.account = account
        self.mode_prefix = "DRY" if dry_run else broker.trading_mode

    def mark_price(self, symbol: str, price: float) -> None:
        if self.dry_run and self.account is not None:
            self.account.mark(symbol, price)

    def execute_buy(self, symbol: str, quantity: int, price: float, exchange: str | None = None) -> OrderResult:
        return self._execute("BUY", symbol, quantity, price, exchange)

    def execute_sell(self, symbol: str, quantity: int, price: float, exchange: str | None = None) -> OrderResult:
        return self._execute("SELL", symbol, quantity, price, exchange)

    def _execute(self, side: str, symbol: str, quantity: int, price: float, exchange: str | None) -> OrderResult:
        symbol = symbol.strip().upper()
        if quantity <= 0 or price <= 0:
            return OrderResult(success=False, message=f"invalid order {quantity} @ {price}")
        venue = map_exchange(exchange)

        if self.dry_run:
            if self.account is not None:
                try:
                    self.account.apply_fill(symbol, side, quantity, price, venue)
                except ValueError as exc:
                    LOGGER.warning("DRY-RUN: %s %s rejected: %s", side, symbol, exc)
                    return OrderResult(success=False, message=str(exc))
            order_id = f"{self.mode_prefix}-{uuid.uuid4().hex[:10]}"
            LOGGER.info("DRY-RUN: %s %s x%d @ %.2f on %s (%s)", side, symbol, quantity, price, venue, order_id)
            return OrderResult(success=True, message="dry-run fill", order_id=order_id)

        try:
            result = self.broker.place_order(symbol, side, quantity, price, venue)
        except BrokerAPIError as exc:
            LOGGER.error("%s %s order failed: %s", side, symbol, exc)
            return OrderResult(success=False, message=str(exc))
        if result.success:
            LOGGER.info(
                "%s: %s %s x%d @ %.2f on %s accepted (order=%s)",
                self.mode_prefix,
                side,
                symbol,
                quantity,
                price,
                venue,
                result.order_id,
            )
        else:
            LOGGER.warning("%s: %s %s rejected: %s", self.mode_prefix, side, symbol, result.message)
        return result
