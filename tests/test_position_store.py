from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

import pytest

from agent.storage.models import PositionRecord
from agent.storage.position_store import (
    JsonFilePositionStore,
    PositionStoreError,
    SqlitePositionStore,
    build_position_store,
)


def _record(symbol: str = "AAPL", **overrides: object) -> PositionRecord:
    values: dict[str, object] = {
        "symbol": symbol,
        "entry_price": 187.25,
        "quantity": 7,
        "initial_quantity": 10,
        "score": 78.0,
        "entry_time": datetime(2026, 10, 19, 15, 4, 5, tzinfo=timezone.utc),
        "highest_price": 193.1,
        "lowest_price": 185.0,
        "current_stop_loss": 190.2035,
        "trailing_stop_active": True,
        "take_profit_levels_hit": [1],
    }
    values.update(overrides)
    return PositionRecord(**values)


def _assert_same(left: PositionRecord, right: PositionRecord) -> None:
    assert left.to_dict() == right.to_dict()


@pytest.mark.parametrize("backend", ["json", "sqlite"])
def test_round_trip(tmp_path, backend: str) -> None:
    path = tmp_path / ("positions.json" if backend == "json" else "positions.db")
    store = build_position_store(backend, path)
    expected = {"AAPL": _record("AAPL"), "MSFT": _record("MSFT", trailing_stop_active=False, take_profit_levels_hit=[])}

    for record in expected.values():
        store.save(record)
    reloaded = build_position_store(backend, path).load()

    assert set(reloaded) == {"AAPL", "MSFT"}
    for symbol, record in expected.items():
        _assert_same(reloaded[symbol], record)


@pytest.mark.parametrize("backend", ["json", "sqlite"])
def test_delete_and_sync(tmp_path, backend: str) -> None:
    path = tmp_path / ("positions.json" if backend == "json" else "positions.db")
    store = build_position_store(backend, path)
    store.save(_record("AAPL"))
    store.save(_record("MSFT"))

    store.delete("aapl")
    assert set(store.load()) == {"MSFT"}

    store.sync({"NVDA": _record("NVDA", quantity=3)})
    loaded = store.load()
    assert set(loaded) == {"NVDA"}
    assert loaded["NVDA"].quantity == 3


def test_save_overwrites_existing_symbol(tmp_path) -> None:
    store = SqlitePositionStore.open(tmp_path / "positions.db")
    store.save(_record("AAPL"))
    store.save(_record("AAPL", quantity=4, take_profit_levels_hit=[1, 2]))

    loaded = store.load()["AAPL"]

    assert loaded.quantity == 4
    assert loaded.take_profit_levels_hit == [1, 2]


def test_json_store_skips_unreadable_entries(tmp_path) -> None:
    path = tmp_path / "positions.json"
    store = JsonFilePositionStore(path)
    store.save(_record("AAPL"))
    path.write_text(path.read_text(encoding="utf-8").replace("{\n", '{\n  "BAD": {"symbol": "BAD"},\n', 1), encoding="utf-8")

    loaded = store.load()

    assert set(loaded) == {"AAPL"}


def test_json_store_corrupt_file_raises(tmp_path) -> None:
    path = tmp_path / "positions.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(PositionStoreError):
        JsonFilePositionStore(path).load()


def test_missing_file_loads_empty(tmp_path) -> None:
    assert JsonFilePositionStore(tmp_path / "missing.json").load() == {}


def test_legacy_record_defaults_initial_quantity() -> None:
    payload = _record().to_dict()
    del payload["initial_quantity"]

    record = PositionRecord.from_dict(payload)

    assert record.initial_quantity == record.quantity
    assert record.entry_time.tzinfo is not None


def test_sqlite_adds_missing_initial_quantity_column(tmp_path) -> None:
    path = tmp_path / "old.db"
    conn = sqlite3.connect(path)
    conn.execute(
        """
        CREATE TABLE positions (
            symbol TEXT PRIMARY KEY,
            entry_price REAL NOT NULL,
            quantity INTEGER NOT NULL,
            score REAL NOT NULL,
            entry_time TEXT NOT NULL,
            highest_price REAL NOT NULL,
            lowest_price REAL NOT NULL,
            trailing_stop_active INTEGER NOT NULL DEFAULT 0,
            current_stop_loss REAL NOT NULL,
            take_profit_levels_hit TEXT NOT NULL DEFAULT '[]',
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "INSERT INTO positions VALUES ('TSLA', 250.0, 4, 60.0, '2026-10-19T14:00:00+00:00', 255.0, 248.0, 0, 242.5, '[]', '')"
    )
    conn.commit()
    conn.close()

    loaded = SqlitePositionStore.open(path).load()

    assert loaded["TSLA"].initial_quantity == 4
    assert loaded["TSLA"].quantity == 4


def test_sqlite_store_skips_unreadable_rows(tmp_path) -> None:
    store = SqlitePositionStore.open(tmp_path / "positions.db")
    store.save(_record("AAPL"))
    store.save(_record("MSFT"))
    store.conn.execute("UPDATE positions SET entry_time = 'garbage' WHERE symbol = 'MSFT'")
    store.conn.commit()

    loaded = store.load()

    assert set(loaded) == {"AAPL"}
