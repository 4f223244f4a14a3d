from __future__ import annotations

import sqlite3
from pathlib import Path


def get_connection(db_path: str | Path) -> sqlite3.Connection:
    path = Path(db_path)
    if str(path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA busy_timeout=30000;")
    return conn


def _table_columns(conn: sqlite3.Connection, table_name: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    return {str(row[1]) for row in rows}


def _ensure_column(
    conn: sqlite3.Connection,
    table_name: str,
    column_name: str,
    column_sql: str,
) -> None:
    if column_name in _table_columns(conn, table_name):
        return
    conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_sql}")


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS signals (
            id TEXT PRIMARY KEY,
            symbol TEXT NOT NULL,
            direction TEXT NOT NULL,
            entry_price REAL NOT NULL,
            stop_loss REAL NOT NULL,
            take_profit_1 REAL NOT NULL,
            take_profit_2 REAL,
            take_profit_3 REAL,
            risk_reward_ratio REAL NOT NULL DEFAULT 0,
            confluence_score INTEGER,
            created_at TEXT NOT NULL,
            send_to_users INTEGER NOT NULL DEFAULT 0,
            sent_to_agents INTEGER NOT NULL DEFAULT 0,
            signal_status TEXT NOT NULL DEFAULT 'pending',
            outcome TEXT NOT NULL DEFAULT 'pending',
            trade_state TEXT NOT NULL DEFAULT 'pending',
            entry_triggered INTEGER NOT NULL DEFAULT 0,
            entry_triggered_at TEXT,
            entry_fill_price REAL,
            breakeven_triggered INTEGER NOT NULL DEFAULT 0,
            trailing_stop REAL,
            current_price REAL,
            highest_price REAL,
            lowest_price REAL,
            max_adverse_excursion REAL,
            max_favorable_excursion REAL,
            tp1_closed INTEGER NOT NULL DEFAULT 0,
            tp2_closed INTEGER NOT NULL DEFAULT 0,
            tp1_pnl REAL NOT NULL DEFAULT 0,
            tp2_pnl REAL NOT NULL DEFAULT 0,
            runner_pnl REAL NOT NULL DEFAULT 0,
            remaining_position_pct REAL NOT NULL DEFAULT 100,
            final_r_multiple REAL,
            exit_price REAL,
            exit_reason TEXT,
            closed_at TEXT,
            updated_at TEXT NOT NULL,
            version INTEGER NOT NULL DEFAULT 0,
            metadata TEXT NOT NULL DEFAULT '{}'
        );

        CREATE TABLE IF NOT EXISTS signal_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            signal_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            trade_state TEXT NOT NULL,
            price REAL,
            stop_before REAL,
            stop_after REAL,
            r_multiple REAL,
            details TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS bot_status (
            bot_type TEXT PRIMARY KEY,
            is_running INTEGER NOT NULL DEFAULT 0,
            pairs TEXT NOT NULL DEFAULT '[]',
            auto_broadcast INTEGER NOT NULL DEFAULT 1,
            send_to_users_enabled INTEGER NOT NULL DEFAULT 1,
            send_to_agents_enabled INTEGER NOT NULL DEFAULT 0,
            strategy TEXT NOT NULL DEFAULT '{}',
            started_at TEXT,
            stopped_at TEXT,
            last_run_at TEXT,
            last_signal_at TEXT,
            signals_generated_last_run INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_signals_status ON signals(signal_status);
        CREATE INDEX IF NOT EXISTS idx_signals_trade_state ON signals(trade_state);
        CREATE INDEX IF NOT EXISTS idx_signal_events_signal ON signal_events(signal_id, created_at);
        """
    )
    # Runtime migration support for existing databases.
    _ensure_column(conn, "signals", "entry_fill_price", "REAL")
    _ensure_column(conn, "signals", "version", "INTEGER NOT NULL DEFAULT 0")
    _ensure_column(conn, "bot_status", "signals_generated_last_run", "INTEGER NOT NULL DEFAULT 0")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_signals_outcome ON signals(outcome)")
    conn.commit()
