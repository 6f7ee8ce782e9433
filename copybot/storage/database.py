"""Database — SQLite persistence layer.

Implements the persistence collaborator the engine depends on:
  load_position / save_position
  load_pending_aggregates / save_pending_aggregate / delete_pending_aggregate
plus the copy-order log and engine state used by status queries.
"""

from __future__ import annotations

import json
import sqlite3
import time
from pathlib import Path
from threading import Lock

from copybot.config import StorageConfig
from copybot.storage.migrations import run_migrations
from copybot.storage.models import OrderRecord, PendingAggregateRecord, PositionRecord
from copybot.observability.logger import get_logger

log = get_logger(__name__)


class Database:
    """SQLite database for the copy engine."""

    def __init__(self, config: StorageConfig):
        self._config = config
        self._conn: sqlite3.Connection | None = None
        self._lock = Lock()

    def connect(self) -> None:
        """Open database connection and run migrations."""
        path = self._config.sqlite_path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        run_migrations(self._conn)
        log.info("database.connected", path=path)

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def _write(self, sql: str, params: tuple) -> None:
        with self._lock:
            self.conn.execute(sql, params)
            self.conn.commit()

    # ── Positions ────────────────────────────────────────────────────

    def load_position(self, trader: str, market_id: str) -> PositionRecord | None:
        row = self.conn.execute(
            "SELECT * FROM positions WHERE trader_address = ? AND market_id = ?",
            (trader, market_id),
        ).fetchone()
        if row:
            return PositionRecord(**dict(row))
        return None

    def save_position(self, record: PositionRecord) -> None:
        self._write(
            """
            INSERT OR REPLACE INTO positions
                (trader_address, market_id, net_size, avg_price,
                 last_processed_trade_id, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record.trader_address, record.market_id, record.net_size,
                record.avg_price, record.last_processed_trade_id, record.updated_at,
            ),
        )

    def get_positions(self, trader: str | None = None) -> list[PositionRecord]:
        if trader:
            rows = self.conn.execute(
                "SELECT * FROM positions WHERE trader_address = ? ORDER BY market_id",
                (trader,),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM positions ORDER BY trader_address, market_id"
            ).fetchall()
        return [PositionRecord(**dict(r)) for r in rows]

    # ── Pending aggregates ───────────────────────────────────────────

    def load_pending_aggregates(self) -> list[PendingAggregateRecord]:
        rows = self.conn.execute("SELECT * FROM pending_aggregates").fetchall()
        out: list[PendingAggregateRecord] = []
        for r in rows:
            data = dict(r)
            data["contributing_trade_ids"] = json.loads(data.get("contributing_trade_ids") or "[]")
            out.append(PendingAggregateRecord(**data))
        return out

    def save_pending_aggregate(self, record: PendingAggregateRecord) -> None:
        self._write(
            """
            INSERT OR REPLACE INTO pending_aggregates
                (trader_address, market_id, side, accumulated_size,
                 weighted_price, opened_at, contributing_trade_ids)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.trader_address, record.market_id, record.side,
                record.accumulated_size, record.weighted_price, record.opened_at,
                json.dumps(record.contributing_trade_ids),
            ),
        )

    def delete_pending_aggregate(self, trader: str, market_id: str, side: str) -> None:
        self._write(
            "DELETE FROM pending_aggregates WHERE trader_address = ? AND market_id = ? AND side = ?",
            (trader, market_id, side),
        )

    # ── Copy orders ──────────────────────────────────────────────────

    def record_order(self, order: OrderRecord) -> None:
        self._write(
            """
            INSERT OR REPLACE INTO copy_orders
                (order_id, trader_address, market_id, side, size, limit_price,
                 strategy_used, status, attempts, retries, venue_order_id,
                 relay_tx_id, fill_price, failure_code, source_trade_ids,
                 created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                order.order_id, order.trader_address, order.market_id, order.side,
                order.size, order.limit_price, order.strategy_used, order.status,
                order.attempts, order.retries, order.venue_order_id,
                order.relay_tx_id, order.fill_price, order.failure_code,
                json.dumps(order.source_trade_ids), order.created_at, order.updated_at,
            ),
        )

    def get_orders(self, status: str | None = None, limit: int = 100) -> list[OrderRecord]:
        if status:
            rows = self.conn.execute(
                "SELECT * FROM copy_orders WHERE status = ? ORDER BY updated_at DESC LIMIT ?",
                (status, limit),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM copy_orders ORDER BY updated_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        out: list[OrderRecord] = []
        for r in rows:
            data = dict(r)
            data["source_trade_ids"] = json.loads(data.get("source_trade_ids") or "[]")
            out.append(OrderRecord(**data))
        return out

    # ── Engine State ─────────────────────────────────────────────────

    def set_engine_state(self, key: str, value: str) -> None:
        self._write(
            "INSERT OR REPLACE INTO engine_state (key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, time.time()),
        )

    def get_all_engine_state(self) -> dict[str, str]:
        rows = self.conn.execute("SELECT key, value FROM engine_state").fetchall()
        return {r["key"]: r["value"] for r in rows}
