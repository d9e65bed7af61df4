from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Protocol

from agent.storage.db import open_positions_db
from agent.storage.models import PositionRecord

LOGGER = logging.getLogger(__name__)


class PositionStoreError(RuntimeError):
    """Position state could not be read or written."""


class PositionStore(Protocol):
    def load(self) -> dict[str, PositionRecord]:
        ...

    def save(self, record: PositionRecord) -> None:
        ...

    def delete(self, symbol: str) -> None:
        ...

    def sync(self, positions: Mapping[str, PositionRecord]) -> None:
        """Replace the stored map with ``positions``."""
        ...


class JsonFilePositionStore:
    """Position map as one JSON object keyed by symbol, rewritten atomically."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.lock = threading.Lock()

    def _read(self) -> dict[str, PositionRecord]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError) as exc:
            raise PositionStoreError(f"Could not read {self.path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise PositionStoreError(f"Unexpected content in {self.path}")
        positions: dict[str, PositionRecord] = {}
        for symbol, item in payload.items():
            try:
                record = PositionRecord.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("Skipping unreadable position %s in %s: %s", symbol, self.path, exc)
                continue
            positions[record.symbol] = record
        return positions

    def _write(self, positions: Mapping[str, PositionRecord]) -> None:
        payload = {symbol: record.to_dict() for symbol, record in positions.items()}
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as file:
                json.dump(payload, file, indent=2, sort_keys=True)
                file.flush()
                os.fsync(file.fileno())
            tmp_path.replace(self.path)
        except OSError as exc:
            raise PositionStoreError(f"Could not write {self.path}: {exc}") from exc

    def load(self) -> dict[str, PositionRecord]:
        with self.lock:
            return self._read()

    def save(self, record: PositionRecord) -> None:
        with self.lock:
            positions = self._read()
            positions[record.symbol] = record
            self._write(positions)

    def delete(self, symbol: str) -> None:
        with self.lock:
            positions = self._read()
            if positions.pop(symbol.upper(), None) is not None:
                self._write(positions)

    def sync(self, positions: Mapping[str, PositionRecord]) -> None:
        with self.lock:
            self._write(positions)


def _row_to_record(row: sqlite3.Row) -> PositionRecord:
    return PositionRecord(
        symbol=str(row["symbol"]),
        entry_price=float(row["entry_price"]),
        quantity=int(row["quantity"]),
        initial_quantity=int(row["initial_quantity"] or row["quantity"]),
        score=float(row["score"]),
        entry_time=datetime.fromisoformat(str(row["entry_time"])),
        highest_price=float(row["highest_price"]),
        lowest_price=float(row["lowest_price"]),
        trailing_stop_active=bool(row["trailing_stop_active"]),
        current_stop_loss=float(row["current_stop_loss"]),
        take_profit_levels_hit=[int(level) for level in json.loads(row["take_profit_levels_hit"] or "[]")],
    )


class SqlitePositionStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.lock = threading.Lock()

    @classmethod
    def open(cls, db_path: str | Path) -> "SqlitePositionStore":
        return cls(open_positions_db(db_path))

    def _upsert(self, record: PositionRecord) -> None:
        data = record.to_dict()
        self.conn.execute(
            """
            INSERT INTO positions (
                symbol, entry_price, quantity, initial_quantity, score, entry_time, highest_price,
                lowest_price, trailing_stop_active, current_stop_loss, take_profit_levels_hit, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(symbol) DO UPDATE SET
                entry_price=excluded.entry_price,
                quantity=excluded.quantity,
                initial_quantity=excluded.initial_quantity,
                score=excluded.score,
                entry_time=excluded.entry_time,
                highest_price=excluded.highest_price,
                lowest_price=excluded.lowest_price,
                trailing_stop_active=excluded.trailing_stop_active,
                current_stop_loss=excluded.current_stop_loss,
                take_profit_levels_hit=excluded.take_profit_levels_hit,
                updated_at=excluded.updated_at
            """,
            (
                data["symbol"],
                data["entry_price"],
                data["quantity"],
                data["initial_quantity"],
                data["score"],
                data["entry_time"],
                data["highest_price"],
                data["lowest_price"],
                int(data["trailing_stop_active"]),
                data["current_stop_loss"],
                json.dumps(data["take_profit_levels_hit"]),
                datetime.now(timezone.utc).isoformat(),
            ),
        )

    def load(self) -> dict[str, PositionRecord]:
        with self.lock:
            try:
                rows = self.conn.execute("SELECT * FROM positions ORDER BY symbol").fetchall()
            except sqlite3.Error as exc:
                raise PositionStoreError(f"Could not read positions: {exc}") from exc
        positions: dict[str, PositionRecord] = {}
        for row in rows:
            try:
                record = _row_to_record(row)
            except (KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("Skipping unreadable position row %s: %s", row["symbol"], exc)
                continue
            positions[record.symbol] = record
        return positions

    def save(self, record: PositionRecord) -> None:
        with self.lock:
            try:
                self._upsert(record)
                self.conn.commit()
            except sqlite3.Error as exc:
                self.conn.rollback()
                raise PositionStoreError(f"Could not save position {record.symbol}: {exc}") from exc

    def delete(self, symbol: str) -> None:
        with self.lock:
            try:
                self.conn.execute("DELETE FROM positions WHERE symbol = ?", (symbol.upper(),))
                self.conn.commit()
            except sqlite3.Error as exc:
                self.conn.rollback()
                raise PositionStoreError(f"Could not delete position {symbol}: {exc}") from exc

    def sync(self, positions: Mapping[str, PositionRecord]) -> None:
        with self.lock:
            try:
                self.conn.execute("DELETE FROM positions")
                for record in positions.values():
                    self._upsert(record)
                self.conn.commit()
            except sqlite3.Error as exc:
                self.conn.rollback()
                raise PositionStoreError(f"Could not sync positions: {exc}") from exc


def build_position_store(backend: str, path: str | Path) -> PositionStore:
    if backend == "sqlite":
        LOGGER.info("Using SQLite position store: %s", path)
        return SqlitePositionStore.open(path)
    LOGGER.info("Using JSON position store: %s", path)
    return JsonFilePositionStore(path)
