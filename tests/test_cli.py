"""Tests for the read-only CLI commands."""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from copybot.cli import cli
from copybot.config import StorageConfig
from copybot.storage.database import Database
from copybot.storage.models import OrderRecord, PositionRecord

TRADER = "0x" + "1" * 40


@pytest.fixture
def setup(tmp_path):
    db_path = tmp_path / "copybot.db"
    config = tmp_path / "config.yaml"
    config.write_text(
        "storage:\n"
        f"  sqlite_path: \"{db_path}\"\n"
        "observability:\n"
        "  log_format: console\n"
        "  log_file: \"\"\n"
    )
    db = Database(StorageConfig(sqlite_path=str(db_path)))
    db.connect()
    yield str(config), db
    db.close()


class TestCLI:
    def test_positions_empty(self, setup):
        config, _ = setup
        result = CliRunner().invoke(cli, ["--config", config, "positions"])
        assert result.exit_code == 0
        assert "No positions yet" in result.output

    def test_positions_table(self, setup):
        config, db = setup
        db.save_position(PositionRecord(
            trader_address=TRADER, market_id="123", net_size=5, avg_price=0.5,
            last_processed_trade_id=9,
        ))
        result = CliRunner().invoke(cli, ["--config", config, "positions"])
        assert result.exit_code == 0
        assert "Mirrored Positions (1)" in result.output

    def test_orders_filtered(self, setup):
        config, db = setup
        for oid, status in (("a" * 8, "FILLED"), ("b" * 8, "FAILED")):
            db.record_order(OrderRecord(
                order_id=oid, trader_address=TRADER, market_id="123", side="BUY",
                size=1, limit_price=0.5, status=status, source_trade_ids=[1],
            ))
        result = CliRunner().invoke(cli, ["--config", config, "orders", "--status", "failed"])
        assert result.exit_code == 0
        assert "Copy Orders (1)" in result.output

    def test_status(self, setup):
        config, db = setup
        runner = CliRunner()
        assert "No engine status" in runner.invoke(cli, ["--config", config, "status"]).output

        db.set_engine_state("engine_status", json.dumps({"running": False, "dry_run": True}))
        result = runner.invoke(cli, ["--config", config, "status"])
        assert result.exit_code == 0
        assert '"dry_run": true' in result.output

    def test_run_without_traders_exits(self, setup):
        config, _ = setup
        result = CliRunner().invoke(cli, ["--config", config, "run"])
        assert result.exit_code == 1
        assert "No traders to copy" in result.output
