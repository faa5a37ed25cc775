"""
CLI entrypoint for daybot.

Provides commands for serve, tick, sync, pnl, init-db and flatten.
"""
import asyncio
import json
from pathlib import Path
from typing import Optional

import typer

from daybot.config.config import Config, load_config
from daybot.monitoring.logger import get_logger, setup_logging
from daybot.storage.db import init_db

app = typer.Typer(
    name="daybot",
    help="Once-a-day equity entry bot",
    add_completion=False,
)

logger = get_logger(__name__)

DEFAULT_CONFIG = Path(__file__).parent / "config" / "config.yaml"


def _bootstrap(config_path: Path) -> Config:
    """Load config, configure logging and open the ledger."""
    config = load_config(str(config_path))
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    if config.data.database_url:
        init_db(config.data.database_url)
    return config


def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


@app.command()
def serve(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
    host: Optional[str] = typer.Option(None, "--host", help="Bind host (default from config)"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port (default from config)"),
):
    """
    Run the HTTP API (tick, fill sync, webhook, panic, views).

    Example:
        python run.py serve --port 8080
    """
    import uvicorn
    from daybot.api.server import create_app

    config = _bootstrap(config_path)
    api = create_app(config)
    bind_host = host or config.api.host
    bind_port = port or config.api.port
    logger.info("Starting API server", host=bind_host, port=bind_port, environment=config.environment)
    uvicorn.run(api, host=bind_host, port=bind_port, log_config=None)


@app.command()
def tick(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Run one orchestrator pass and print the result as JSON."""
    from daybot.api.server import build_services

    config = _bootstrap(config_path)
    services = build_services(config)
    result = asyncio.run(services.orchestrator.run_once())
    _echo_json(result)


@app.command()
def sync(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
    window_minutes: Optional[int] = typer.Option(None, "--window-minutes", help="Trailing window (15..10080)"),
    day: Optional[str] = typer.Option(None, "--day", help="Exchange-local day YYYY-MM-DD"),
):
    """Pull recent broker orders and reconcile their fills."""
    from daybot.api.server import build_services

    config = _bootstrap(config_path)
    services = build_services(config)
    result = asyncio.run(services.fill_sync.sync(day=day, window_minutes=window_minutes))
    _echo_json(result)


@app.command()
def pnl(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Print the FIFO trade log and open lots from the ledger."""
    from daybot.accounting.fifo import trade_log
    from daybot.storage import repository

    _bootstrap(config_path)
    annotated, open_positions = trade_log(repository.list_all_trades())

    typer.echo("\n" + "=" * 72)
    typer.echo(f"{'AT':<20} {'SIDE':<5} {'TICKER':<8} {'QTY':>8} {'PRICE':>10} {'REALIZED':>10} {'CUM':>10}")
    typer.echo("=" * 72)
    for row in annotated:
        fill = row.fill
        typer.echo(
            f"{fill.at.strftime('%Y-%m-%d %H:%M:%S') if fill.at else '-':<20} {fill.side.value:<5} {fill.ticker:<8} "
            f"{fill.quantity:>8} {fill.price:>10.2f} {row.realized:>10.2f} {row.cumulative:>10.2f}"
        )
    typer.echo("=" * 72)
    if open_positions:
        for pos in open_positions:
            typer.echo(f"OPEN {pos.ticker}: qty={pos.quantity} avg_cost={pos.avg_cost:.4f}")
    else:
        typer.echo("No open lots")
    total = annotated[-1].cumulative if annotated else 0
    typer.echo(f"Realized total: ${total:,.2f}\n")


@app.command("init-db")
def init_db_command(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Create the ledger tables and the bot state row."""
    from decimal import Decimal
    from daybot.storage import repository

    # Without data.database_url the ledger falls back to DATABASE_URL
    config = _bootstrap(config_path)
    state = repository.ensure_bot_state(Decimal(str(config.execution.starting_cash)))
    _echo_json({"ok": True, "state": state.to_dict()})


@app.command()
def flatten(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
    yes: bool = typer.Option(False, "--yes", help="Skip the confirmation prompt"),
):
    """Cancel all open orders and close every broker position at market."""
    from daybot.data.alpaca_client import AlpacaClient
    from daybot.execution.flatten import flatten_all

    config = _bootstrap(config_path)
    if not yes and not typer.confirm(f"Flatten ALL positions at {config.broker.base_url}?"):
        raise typer.Abort()

    report = asyncio.run(flatten_all(AlpacaClient(config.broker)))
    _echo_json(report.to_dict())
    if not report.ok:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
