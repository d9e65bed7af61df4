from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from agent.clock import utc_now
from agent.config import PositionSizingConfig, TakeProfitConfig, TrailingStopConfig
from agent.data.broker_client import Holding
from agent.storage.models import PositionRecord
from agent.storage.position_store import PositionStore, PositionStoreError

LOGGER = logging.getLogger(__name__)

HOLD = "HOLD"
STOP_LOSS = "STOP_LOSS"
TRAILING_STOP = "TRAILING_STOP"


@dataclass(slots=True)
class PositionUpdate:
    symbol: str
    action: str
    current_price: float
    entry_price: float
    profit_percent: float
    highest_price: float
    current_stop_loss: float
    reason: str = ""
    take_profit_level: int | None = None
    sell_percent: float | None = None
    sell_quantity: int = 0
    full_exit: bool = False

    @property
    def is_exit(self) -> bool:
        return self.action != HOLD


@dataclass(slots=True)
class PositionSize:
    quantity: int
    value: float
    target_percent: float
    actual_percent: float
    score: float
    regime_multiplier: float


@dataclass(slots=True)
class ExposureCheck:
    allowed: bool
    reason: str = ""
    current_exposure: float = 0.0
    new_exposure: float = 0.0
    metadata: dict[str, float | int] = field(default_factory=dict)


def profit_percent(entry_price: float, price: float) -> float:
    if entry_price <= 0:
        return 0.0
    return (price - entry_price) / entry_price * 100


class PositionManager:
    """
    Per-symbol position tracker with stop-loss, break-even, trailing stop and
    tiered take-profit exits.

    Every mutation is written through the store before the call returns. A
    failed write is logged and the manager stays dirty; the next mutation or
    ``refresh()`` rewrites the whole map.
    """

    def __init__(
        self,
        store: PositionStore,
        *,
        trailing: TrailingStopConfig | None = None,
        take_profit: TakeProfitConfig | None = None,
        sizing: PositionSizingConfig | None = None,
    ):
        self.store = store
        self.trailing = trailing or TrailingStopConfig()
        self.take_profit = take_profit or TakeProfitConfig()
        self.sizing = sizing or PositionSizingConfig()
        self._lock = threading.RLock()
        self._dirty = False
        self._positions: dict[str, PositionRecord] = self._load()

    def _load(self) -> dict[str, PositionRecord]:
        try:
            return self.store.load()
        except PositionStoreError as exc:
            LOGGER.error("Could not load positions, starting empty: %s", exc)
            return {}

    def _persist(self, record: PositionRecord | None = None, *, deleted: str | None = None) -> bool:
        try:
            if self._dirty:
                self.store.sync(self._positions)
            elif deleted is not None:
                self.store.delete(deleted)
            elif record is not None:
                self.store.save(record)
        except PositionStoreError as exc:
            self._dirty = True
            LOGGER.error("Position state not persisted (kept in memory): %s", exc)
            return False
        self._dirty = False
        return True

    def refresh(self) -> None:
        """Re-read the store, first flushing state a previous write failed to persist."""
        with self._lock:
            if self._dirty and not self._persist():
                return
            self._positions = self._load()

    @property
    def dirty(self) -> bool:
        return self._dirty

    def all_positions(self) -> dict[str, PositionRecord]:
        with self._lock:
            return dict(self._positions)

    def get_position(self, symbol: str) -> PositionRecord | None:
        with self._lock:
            return self._positions.get(symbol.upper())

    def has_position(self, symbol: str) -> bool:
        with self._lock:
            return symbol.upper() in self._positions

    def add_position(
        self,
        symbol: str,
        entry_price: float,
        quantity: int,
        score: float = 50.0,
        *,
        entry_time: datetime | None = None,
    ) -> PositionRecord:
        if entry_price <= 0 or quantity <= 0:
            raise ValueError("entry_price and quantity must be > 0")
        key = symbol.upper()
        record = PositionRecord(
            symbol=key,
            entry_price=entry_price,
            quantity=int(quantity),
            initial_quantity=int(quantity),
            score=score,
            entry_time=entry_time or utc_now(),
            highest_price=entry_price,
            lowest_price=entry_price,
            current_stop_loss=entry_price * (1 + self.trailing.initial_stop_loss_percent / 100),
        )
        with self._lock:
            self._positions[key] = record
            self._persist(record)
        LOGGER.info(
            "Position opened %s qty=%d entry=%.2f stop=%.2f score=%.0f",
            key,
            record.quantity,
            entry_price,
            record.current_stop_loss,
            score,
        )
        return record

    def adopt_holding(self, holding: Holding, score: float) -> PositionRecord:
        entry = holding.avg_price if holding.avg_price > 0 else holding.current_price
        LOGGER.info("Adopting untracked holding %s qty=%d avg=%.2f", holding.symbol, holding.quantity, entry)
        return self.add_position(holding.symbol, entry, holding.quantity, score)

    def remove_position(self, symbol: str) -> bool:
        key = symbol.upper()
        with self._lock:
            if key not in self._positions:
                return False
            del self._positions[key]
            self._persist(deleted=key)
        LOGGER.info("Position closed %s", key)
        return True

    def reduce_position(self, symbol: str, quantity: int) -> PositionRecord | None:
        """Reduce after a partial sell; the record is removed when nothing remains."""
        key = symbol.upper()
        with self._lock:
            record = self._positions.get(key)
            if record is None:
                return None
            remaining = record.quantity - int(quantity)
            if remaining <= 0:
                self.remove_position(key)
                return None
            record.quantity = remaining
            self._persist(record)
            return record

    def sync_positions(self, holdings: Iterable[Holding] | None) -> list[str]:
        """Drop records for symbols the account no longer holds."""
        if holdings is None:
            return []
        held = {holding.symbol.upper() for holding in holdings}
        with self._lock:
            stale = [symbol for symbol in self._positions if symbol not in held]
            if not stale:
                return []
            for symbol in stale:
                LOGGER.info("Removing stale position %s (not held at broker)", symbol)
                del self._positions[symbol]
            self._dirty = True
            self._persist()
        return stale

    def update_price(self, symbol: str, price: float) -> PositionUpdate | None:
        key = symbol.upper()
        with self._lock:
            position = self._positions.get(key)
            if position is None:
                return None
            update = self._evaluate(position, price)
            self._persist(position)
        if update.is_exit:
            LOGGER.info("%s %s: %s", key, update.action, update.reason)
        return update

    def _evaluate(self, position: PositionRecord, price: float) -> PositionUpdate:
        cfg = self.trailing
        profit = profit_percent(position.entry_price, price)
        position.highest_price = max(position.highest_price, price)
        position.lowest_price = min(position.lowest_price, price)

        def result(action: str, reason: str = "", **extra: object) -> PositionUpdate:
            return PositionUpdate(
                symbol=position.symbol,
                action=action,
                current_price=price,
                entry_price=position.entry_price,
                profit_percent=profit,
                highest_price=position.highest_price,
                current_stop_loss=position.current_stop_loss,
                reason=reason,
                **extra,
            )

        if profit <= cfg.initial_stop_loss_percent:
            return result(
                STOP_LOSS,
                f"Stop loss at {profit:.2f}%",
                sell_quantity=position.quantity,
                full_exit=True,
            )

        reason = ""
        if profit >= cfg.break_even_percent and position.current_stop_loss < position.entry_price:
            position.current_stop_loss = position.entry_price * (1 + cfg.break_even_buffer)
            reason = "Stop moved to break-even"

        if profit >= cfg.activation_percent:
            position.trailing_stop_active = True
        if position.trailing_stop_active:
            floor = position.highest_price * (1 - cfg.trailing_percent / 100)
            position.current_stop_loss = max(position.current_stop_loss, floor)

        if position.trailing_stop_active and price <= position.current_stop_loss:
            return result(
                TRAILING_STOP,
                f"Trailing stop: high {position.highest_price:.2f}, stop {position.current_stop_loss:.2f}",
                sell_quantity=position.quantity,
                full_exit=True,
            )

        levels = self.take_profit.levels
        for index in range(len(levels), 0, -1):
            level = levels[index - 1]
            if profit < level.percent or index in position.take_profit_levels_hit:
                continue
            position.take_profit_levels_hit.append(index)
            quantity = min(
                position.quantity,
                max(1, math.ceil(position.initial_quantity * level.sell_percent / 100)),
            )
            return result(
                f"TAKE_PROFIT_L{index}",
                f"Take profit level {index} at {profit:.2f}%",
                take_profit_level=index,
                sell_percent=level.sell_percent,
                sell_quantity=quantity,
                full_exit=index == len(levels) or quantity >= position.quantity,
            )

        return result(HOLD, reason)

    def calculate_position_size(
        self,
        total_capital: float,
        price: float,
        score: float,
        regime_multiplier: float = 1.0,
        atr: float | None = None,
    ) -> PositionSize:
        cfg = self.sizing
        if score >= 90:
            percent = cfg.max_position_percent
        elif score >= 80:
            percent = cfg.max_position_percent * 0.8
        elif score >= 70:
            percent = cfg.max_position_percent * 0.6
        elif score >= 60:
            percent = cfg.max_position_percent * 0.4
        else:
            percent = cfg.min_position_percent

        percent *= regime_multiplier
        if atr and price > 0:
            atr_percent = atr / price * 100
            if atr_percent > 5:
                percent *= 0.5
            elif atr_percent > 3:
                percent *= 0.75
        percent = max(cfg.min_position_percent, min(cfg.max_position_percent, percent))

        if total_capital <= 0 or price <= 0:
            return PositionSize(0, 0.0, percent, 0.0, score, regime_multiplier)
        target_value = total_capital * percent / 100
        quantity = max(1, math.floor(target_value / price))
        value = quantity * price
        return PositionSize(
            quantity=quantity,
            value=value,
            target_percent=percent,
            actual_percent=value / total_capital * 100,
            score=score,
            regime_multiplier=regime_multiplier,
        )

    @staticmethod
    def calculate_total_exposure(holdings: list[Holding], total_capital: float) -> float:
        if not holdings or total_capital <= 0:
            return 0.0
        return sum(holding.current_value for holding in holdings) / total_capital * 100

    def can_add_position(
        self,
        holdings: list[Holding],
        total_capital: float,
        new_position_value: float,
    ) -> ExposureCheck:
        cfg = self.sizing
        if len(holdings) >= cfg.max_positions:
            return ExposureCheck(
                allowed=False,
                reason=f"Max positions ({cfg.max_positions}) reached",
                metadata={"holdings": len(holdings)},
            )
        if total_capital <= 0:
            return ExposureCheck(allowed=False, reason="No capital available")
        current = self.calculate_total_exposure(holdings, total_capital)
        total = current + new_position_value / total_capital * 100
        if total > cfg.max_total_exposure:
            return ExposureCheck(
                allowed=False,
                reason=f"Max exposure ({cfg.max_total_exposure:.0f}%) would be exceeded",
                current_exposure=current,
                new_exposure=total,
            )
        return ExposureCheck(allowed=True, current_exposure=current, new_exposure=total)
