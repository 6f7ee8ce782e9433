"""CLI entry point for the Polymarket copy-trading bot.

Commands:
  copybot run                — Start copying tracked traders until SIGINT/SIGTERM
  copybot positions          — Show mirrored positions per (trader, market)
  copybot orders --status    — Show recent copy orders
  copybot status             — Show the last persisted engine status
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from copybot.config import BotConfig, get_private_key, is_live_trading_enabled, load_config
from copybot.observability.logger import configure_from, get_logger, short_addr
from copybot.storage.database import Database

load_dotenv()

console = Console()
log = get_logger(__name__)


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)


def _open_db(cfg: BotConfig) -> Database:
    db = Database(cfg.storage)
    db.connect()
    return db


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Polymarket Copy-Trading Bot."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    configure_from(cfg.observability)


# ─── RUN ─────────────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Start the copy engine."""
    cfg: BotConfig = ctx.obj["config"]
    dry_run = cfg.execution.dry_run or not is_live_trading_enabled()

    console.print("[bold cyan]🤖 Starting Copy Engine[/bold cyan]")
    console.print(f"  Tracked traders: {len(cfg.feed.tracked_traders)}")
    for trader in cfg.feed.tracked_traders:
        console.print(f"    • {trader}")
    console.print(f"  Strategy: {cfg.strategy.strategy.value}")
    console.print(f"  Wallet: {cfg.wallet.wallet_type.value} {short_addr(cfg.wallet.address)}")
    console.print(f"  Aggregation: {'on' if cfg.aggregation.enabled else 'off'}"
                  f" (min {cfg.aggregation.min_tradable_size}, expiry {cfg.aggregation.expiry_policy.value})")
    console.print(f"  Live trading: {not dry_run}")
    console.print()

    if not cfg.feed.tracked_traders:
        console.print("[red]❌ No traders to copy. Set USER_ADDRESSES or feed.tracked_traders.[/red]")
        raise SystemExit(1)
    if not dry_run and not get_private_key():
        console.print("[red]❌ PRIVATE_KEY is required for live trading.[/red]")
        raise SystemExit(1)
    if dry_run:
        console.print("[yellow]⚠ Dry run: orders are simulated, nothing is sent to the venue.[/yellow]\n")

    async def _run_engine() -> None:
        from copybot.engine.engine import CopyEngine

        eng = CopyEngine(config=cfg)
        await eng.run()

    try:
        _run(_run_engine())
    except KeyboardInterrupt:
        console.print("\n[yellow]Engine stopped by user.[/yellow]")


# ─── POSITIONS ───────────────────────────────────────────────────────

@cli.command()
@click.option("--trader", default=None, help="Only show one trader's positions")
@click.pass_context
def positions(ctx: click.Context, trader: str | None) -> None:
    """Show mirrored positions."""
    cfg: BotConfig = ctx.obj["config"]
    db = _open_db(cfg)
    try:
        records = db.get_positions(trader.lower() if trader else None)
    finally:
        db.close()

    if not records:
        console.print("[yellow]No positions yet.[/yellow]")
        return

    table = Table(title=f"📊 Mirrored Positions ({len(records)})")
    table.add_column("Trader", style="cyan")
    table.add_column("Market", style="dim", max_width=20)
    table.add_column("Net Size", justify="right")
    table.add_column("Avg Price", justify="right", style="yellow")
    table.add_column("Notional", justify="right", style="green")
    table.add_column("Last Trade ID", justify="right")
    table.add_column("Updated", style="dim")

    for r in records:
        table.add_row(
            short_addr(r.trader_address),
            r.market_id[:20],
            f"{r.net_size:,.4f}",
            f"{r.avg_price:.4f}",
            f"${r.notional:,.2f}",
            str(r.last_processed_trade_id),
            r.updated_at[:19],
        )
    console.print(table)


# ─── ORDERS ──────────────────────────────────────────────────────────

_STATUS_STYLES = {
    "FILLED": "green",
    "FAILED": "red",
    "RETRYING": "yellow",
    "SUBMITTED": "cyan",
    "PENDING": "dim",
}


@cli.command()
@click.option("--status", "status_filter", default=None,
              type=click.Choice(list(_STATUS_STYLES), case_sensitive=False),
              help="Filter by order status")
@click.option("--limit", default=50, help="Number of orders to show")
@click.pass_context
def orders(ctx: click.Context, status_filter: str | None, limit: int) -> None:
    """Show recent copy orders."""
    cfg: BotConfig = ctx.obj["config"]
    db = _open_db(cfg)
    try:
        records = db.get_orders(status=status_filter.upper() if status_filter else None, limit=limit)
    finally:
        db.close()

    if not records:
        console.print("[yellow]No copy orders found.[/yellow]")
        return

    table = Table(title=f"🧾 Copy Orders ({len(records)})")
    table.add_column("Order", style="dim")
    table.add_column("Trader", style="cyan")
    table.add_column("Market", max_width=16)
    table.add_column("Side")
    table.add_column("Size", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Fill", justify="right")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Code", style="red")
    table.add_column("Trade IDs", style="dim", max_width=24)

    for o in records:
        style = _STATUS_STYLES.get(o.status, "white")
        table.add_row(
            o.order_id[:8],
            short_addr(o.trader_address),
            o.market_id[:16],
            o.side,
            f"{o.size:,.4f}",
            f"{o.limit_price:.4f}",
            f"{o.fill_price:.4f}" if o.fill_price else "-",
            f"[{style}]{o.status}[/{style}]",
            str(o.retries),
            o.failure_code or "",
            ",".join(str(t) for t in o.source_trade_ids),
        )
    console.print(table)


# ─── STATUS ──────────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the last engine status written by a running engine."""
    cfg: BotConfig = ctx.obj["config"]
    db = _open_db(cfg)
    try:
        state = db.get_all_engine_state()
    finally:
        db.close()

    raw = state.get("engine_status")
    if not raw:
        console.print("[yellow]No engine status recorded yet. Start the engine with `copybot run`.[/yellow]")
        return

    console.print("[bold]📊 Engine Status[/bold]")
    console.print_json(json.dumps(json.loads(raw), indent=2, default=str))


if __name__ == "__main__":
    cli()
