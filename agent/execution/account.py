from __future__ import annotations

import logging
import threading

from agent.data.broker_client import AccountBalance, Holding

LOGGER = logging.getLogger(__name__)


class DryRunAccount:
    """Simulated cash account filled by dry-run orders at the order price."""

    def __init__(self, buying_power: float, holdings: list[Holding] | None = None):
        self.buying_power = float(buying_power)
        self._holdings: dict[str, Holding] = {h.symbol.upper(): h for h in holdings or []}
        self._lock = threading.Lock()

    def get_balance(self) -> AccountBalance:
        with self._lock:
            holdings = [
                Holding(
                    symbol=h.symbol,
                    quantity=h.quantity,
                    avg_price=h.avg_price,
                    current_price=h.current_price,
                    profit_rate=h.profit_rate,
                    exchange=h.exchange,
                )
                for h in self._holdings.values()
            ]
            return AccountBalance(buying_power=self.buying_power, holdings=holdings)

    def mark(self, symbol: str, price: float) -> None:
        with self._lock:
            holding = self._holdings.get(symbol.upper())
            if holding is None or price <= 0:
                return
            holding.current_price = price
            if holding.avg_price > 0:
                holding.profit_rate = (price - holding.avg_price) / holding.avg_price * 100

    def apply_fill(self, symbol: str, side: str, quantity: int, price: float, exchange: str | None = None) -> None:
        key = symbol.upper()
        with self._lock:
            if side == "BUY":
                cost = quantity * price
                if cost > self.buying_power:
                    raise ValueError(f"Insufficient simulated buying power for {key}: {cost:.2f} > {self.buying_power:.2f}")
                self.buying_power -= cost
                holding = self._holdings.get(key)
                if holding is None:
                    self._holdings[key] = Holding(
                        symbol=key,
                        quantity=quantity,
                        avg_price=price,
                        current_price=price,
                        exchange=exchange,
                    )
                else:
                    total = holding.quantity + quantity
                    holding.avg_price = (holding.avg_price * holding.quantity + price * quantity) / total
                    holding.quantity = total
                    holding.current_price = price
            else:
                holding = self._holdings.get(key)
                if holding is None or holding.quantity < quantity:
                    raise ValueError(f"Cannot sell {quantity} {key}: simulated holding too small")
                self.buying_power += quantity * price
                holding.quantity -= quantity
                holding.current_price = price
                if holding.quantity == 0:
                    del self._holdings[key]
        LOGGER.debug("DRY-RUN account %s %s x%d @ %.2f, buying power %.2f", side, key, quantity, price, self.buying_power)
