from __future__ import annotations

import sqlite3
from pathlib import Path

POSITIONS_SCHEMA = """
CREATE TABLE IF NOT EXISTS positions (
    symbol TEXT PRIMARY KEY,
    entry_price REAL NOT NULL,
    quantity INTEGER NOT NULL,
    initial_quantity INTEGER NOT NULL DEFAULT 0,
    score REAL NOT NULL,
    entry_time TEXT NOT NULL,
    highest_price REAL NOT NULL,
    lowest_price REAL NOT NULL,
    trailing_stop_active INTEGER NOT NULL DEFAULT 0,
    current_stop_loss REAL NOT NULL,
    take_profit_levels_hit TEXT NOT NULL DEFAULT '[]',
    updated_at TEXT NOT NULL
);
"""

# Columns that positions databases created by older builds may lack.
POSITIONS_MIGRATIONS = {
    "initial_quantity": "INTEGER NOT NULL DEFAULT 0",
}


def open_positions_db(db_path: str | Path) -> sqlite3.Connection:
    """Open (and create if needed) the positions database in WAL mode."""
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False, timeout=15.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.executescript(POSITIONS_SCHEMA)
    present = {str(row["name"]) for row in conn.execute("PRAGMA table_info(positions)")}
    for column, ddl in POSITIONS_MIGRATIONS.items():
        if column not in present:
            conn.execute(f"ALTER TABLE positions ADD COLUMN {column} {ddl}")
    conn.commit()
    return conn
