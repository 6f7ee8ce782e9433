"""Database migrations — create and upgrade schema."""

from __future__ import annotations

import sqlite3

from copybot.observability.logger import get_logger

log = get_logger(__name__)

SCHEMA_VERSION = 2

_MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS positions (
            trader_address TEXT NOT NULL,
            market_id TEXT NOT NULL,
            net_size REAL DEFAULT 0,
            avg_price REAL DEFAULT 0,
            last_processed_trade_id INTEGER DEFAULT 0,
            updated_at TEXT,
            PRIMARY KEY (trader_address, market_id)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS pending_aggregates (
            trader_address TEXT NOT NULL,
            market_id TEXT NOT NULL,
            side TEXT NOT NULL,
            accumulated_size REAL DEFAULT 0,
            weighted_price REAL DEFAULT 0,
            opened_at REAL,
            contributing_trade_ids TEXT DEFAULT '[]',
            PRIMARY KEY (trader_address, market_id, side)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS copy_orders (
            order_id TEXT PRIMARY KEY,
            trader_address TEXT NOT NULL,
            market_id TEXT NOT NULL,
            side TEXT,
            size REAL,
            limit_price REAL,
            strategy_used TEXT,
            status TEXT,
            attempts INTEGER DEFAULT 0,
            retries INTEGER DEFAULT 0,
            venue_order_id TEXT DEFAULT '',
            relay_tx_id TEXT DEFAULT '',
            fill_price REAL DEFAULT 0,
            failure_code TEXT DEFAULT '',
            source_trade_ids TEXT DEFAULT '[]',
            created_at TEXT,
            updated_at TEXT
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_orders_trader ON copy_orders(trader_address, market_id);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_orders_status ON copy_orders(status);
        """,
    ],
    2: [
        # Engine state, read by the CLI status command
        """
        CREATE TABLE IF NOT EXISTS engine_state (
            key TEXT PRIMARY KEY,
            value TEXT,
            updated_at REAL
        );
        """,
    ],
}


def run_migrations(conn: sqlite3.Connection) -> None:
    """Run all pending migrations."""
    conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")
    conn.commit()

    current = _get_current_version(conn)

    for version in sorted(_MIGRATIONS.keys()):
        if version <= current:
            continue
        log.info("migrations.running", version=version)
        for sql in _MIGRATIONS[version]:
            conn.execute(sql)
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (version,),
        )
        conn.commit()
        log.info("migrations.applied", version=version)

    log.debug("migrations.complete", version=_get_current_version(conn))


def _get_current_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] else 0
