"""
Command line tools for operating the mining engine.
"""

import asyncio
import sys
from typing import Any, Awaitable, Callable, Dict

import typer
from rich.console import Console
from rich.table import Table

from mining_engine.core.config import settings
from mining_engine.core.database import DatabaseManager, close_database, init_database
from mining_engine.core.logging import get_logger, setup_logging
from mining_engine.services.engine import MiningEngine

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="Mining engine management commands")


def _run_with_engine(func: Callable[[MiningEngine], Awaitable[Any]]) -> Any:
    """Run `func` against an engine without cache or websocket notifier."""
    async def _run():
        setup_logging()
        await init_database()
        try:
            return await func(MiningEngine())
        finally:
            await close_database()

    return asyncio.run(_run())


def _stats_table(title: str, data: Dict[str, Any]) -> Table:
    table = Table(title=title)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for key, value in data.items():
        if isinstance(value, (list, dict)):
            value = len(value) if value else "-"
        table.add_row(key, str(value))
    return table


@app.command("init-db")
def init_db():
    """Create all tables."""
    async def _init():
        setup_logging()
        await init_database()
        await DatabaseManager.create_tables()
        await close_database()

    asyncio.run(_init())
    console.print("✅ Database initialized successfully!")


@app.command("drop-db")
def drop_db(yes: bool = typer.Option(False, "--yes", help="Skip confirmation")):
    """Drop all tables."""
    if not yes and not typer.confirm("Are you sure you want to drop all tables?"):
        console.print("❌ Operation cancelled")
        raise typer.Exit(1)

    async def _drop():
        setup_logging()
        await init_database()
        await DatabaseManager.drop_tables()
        await close_database()

    asyncio.run(_drop())
    console.print("🗑️ All tables dropped!")


@app.command()
def health():
    """Check database health."""
    async def _health():
        setup_logging()
        await init_database()
        try:
            return await DatabaseManager.health_check()
        finally:
            await close_database()

    if asyncio.run(_health()):
        console.print("✅ Database is healthy!")
    else:
        console.print("❌ Database health check failed!")
        sys.exit(1)


@app.command("run-expiry")
def run_expiry():
    """Finalize every expired slot now."""
    stats = _run_with_engine(lambda engine: engine.run_expiry_batch_now())
    console.print(_stats_table("Expiry run", stats.to_dict()))
    for error in stats.errors:
        console.print(f"[red]{error}[/red]")
    if stats.failed_slots:
        raise typer.Exit(1)


@app.command("run-persistence")
def run_persistence():
    """Checkpoint material unrealized earnings now."""
    stats = _run_with_engine(lambda engine: engine.run_persistence_now())
    console.print(_stats_table("Accrual persistence", stats.to_dict()))
    if stats.failed:
        raise typer.Exit(1)


@app.command()
def status():
    """Show slot processing counters."""
    data = _run_with_engine(lambda engine: engine.get_processing_status())
    data.pop("last_run", None)
    console.print(_stats_table("Processing status", data))


@app.command()
def reconcile(owner_id: int = typer.Argument(..., help="Owner to check")):
    """Compare an owner's wallet with the activity ledger."""
    result = _run_with_engine(lambda engine: engine.reconcile(owner_id))
    console.print(_stats_table(f"Wallet of owner {owner_id}", result))
    if not result["consistent"]:
        raise typer.Exit(1)


@app.command("serve-scheduler")
def serve_scheduler():
    """Run the background scheduler without the API."""
    from mining_engine.scheduler.main import main

    asyncio.run(main())


@app.command()
def serve(
    host: str = typer.Option(settings.host),
    port: int = typer.Option(settings.port),
):
    """Serve the HTTP API."""
    import uvicorn

    uvicorn.run(
        "mining_engine.api.main:app",
        host=host,
        port=port,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    app()
