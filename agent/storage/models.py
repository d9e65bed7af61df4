from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _from_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(slots=True)
class PositionRecord:
    symbol: str
    entry_price: float
    quantity: int
    score: float
    entry_time: datetime
    highest_price: float
    lowest_price: float
    current_stop_loss: float
    initial_quantity: int = 0
    trailing_stop_active: bool = False
    take_profit_levels_hit: list[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.initial_quantity <= 0:
            self.initial_quantity = self.quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "entry_price": self.entry_price,
            "quantity": self.quantity,
            "initial_quantity": self.initial_quantity,
            "score": self.score,
            "entry_time": _to_iso(self.entry_time),
            "highest_price": self.highest_price,
            "lowest_price": self.lowest_price,
            "trailing_stop_active": self.trailing_stop_active,
            "current_stop_loss": self.current_stop_loss,
            "take_profit_levels_hit": list(self.take_profit_levels_hit),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PositionRecord":
        return cls(
            symbol=str(payload["symbol"]).upper(),
            entry_price=float(payload["entry_price"]),
            quantity=int(payload["quantity"]),
            initial_quantity=int(payload.get("initial_quantity") or payload["quantity"]),
            score=float(payload.get("score", 0.0)),
            entry_time=_from_iso(str(payload["entry_time"])),
            highest_price=float(payload["highest_price"]),
            lowest_price=float(payload["lowest_price"]),
            trailing_stop_active=bool(payload.get("trailing_stop_active", False)),
            current_stop_loss=float(payload["current_stop_loss"]),
            take_profit_levels_hit=[int(level) for level in payload.get("take_profit_levels_hit", [])],
        )

