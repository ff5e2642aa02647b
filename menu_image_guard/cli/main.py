"""
CLI interface for Menu Image Guard.

Provides command-line access to the cache, the spend ledger and the
generation pipeline.
"""

import asyncio
import logging
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from menu_image_guard.config.loader import (
    PipelineConfig,
    default_pipeline_config,
    load_pipeline_config,
)
from menu_image_guard.core.errors import LedgerError
from menu_image_guard.core.normalizer import normalize_title, title_to_filename
from menu_image_guard.core.pipeline import build_pipeline
from menu_image_guard.core.tasks import create_menu, wait_for_menu_image
from menu_image_guard.storage.cache_store import SqliteImageCache
from menu_image_guard.storage.db import DEFAULT_DB_PATH
from menu_image_guard.storage.ledger import SqliteSpendLedger
from menu_image_guard.storage.repository import MenuRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", "-d", help="SQLite database path")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Pipeline YAML configuration")


def _load_config(config_path: Optional[str]) -> PipelineConfig:
    if config_path is None:
        return default_pipeline_config()
    return load_pipeline_config(config_path)


def _format_currency(amount) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """Menu Image Guard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True
    )
    if ctx.invoked_subcommand is None:
        console.print("Menu Image Guard - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the Menu Image Guard database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def budget(db: str = DB_OPTION, config: Optional[str] = CONFIG_OPTION):
    """Show image generation spend against the global cap."""
    try:
        pipeline_config = _load_config(config)
        state = SqliteSpendLedger(db).snapshot()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    cap = pipeline_config.budget.cap
    table = Table(title="Image Generation Budget")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Images generated", f"{state.units_generated:,}")
    table.add_row("Total spent", _format_currency(state.total_spent))
    table.add_row("In-flight holds", f"{state.reserved_units} ({_format_currency(state.reserved_amount)})")
    table.add_row("Unit cost", _format_currency(pipeline_config.budget.unit_cost))
    table.add_row("Cap", _format_currency(cap))
    table.add_row("Remaining", _format_currency(state.remaining(cap)))
    if state.last_updated:
        table.add_row("Last updated", state.last_updated.isoformat(timespec="seconds"))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def lookup(title: str, db: str = DB_OPTION):
    """Show the cache key and cached image for a menu title."""
    key = normalize_title(title)
    if not key:
        console.print("[yellow]Title has no cacheable characters[/]")
        sys.exit(EXIT_CODE_FAIL)

    cache = SqliteImageCache(db)
    image_ref = cache.lookup(key)
    console.print(f"Key: {key}")
    console.print(f"Filename: {title_to_filename(key)}")
    if image_ref:
        console.print(f"[green]Cached:[/] {image_ref}")
        rows = cache.entries(key)
        if len(rows) > 1:
            # Racing generations each inserted a row; the oldest is served
            table = Table(title=f"{len(rows)} cache rows for this key")
            table.add_column("Created")
            table.add_column("Image")
            for row in rows:
                table.add_row(row.created_at.isoformat(timespec="seconds"), row.image_ref)
            console.print(table)
        sys.exit(EXIT_CODE_PASS)
    console.print("[dim]Not cached[/]")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def generate(
    title: str,
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        "-t",
        help="Seconds to poll for the result (defaults to the task deadline)"
    )
):
    """
    Create a menu and generate its illustration.

    The image is produced by a background task; this command polls the
    menu until the task resolves, the same way an app client would.
    """
    try:
        pipeline_config = _load_config(config)
        initialize_schema(db)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    poll_timeout = timeout if timeout is not None else pipeline_config.tasks.deadline_seconds + 5
    menu = asyncio.run(_generate(pipeline_config, db, title, poll_timeout))

    if menu is None:
        console.print("[red]Menu disappeared while generating[/]")
        sys.exit(EXIT_CODE_FAIL)
    if menu.generating:
        console.print(f"[yellow]Menu {menu.id} is still generating[/]")
        sys.exit(EXIT_CODE_FAIL)
    if menu.image_ref:
        console.print(f"[green]✓[/] Menu {menu.id}: {menu.image_ref}")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]✗[/] Menu {menu.id}: no image generated")
    sys.exit(EXIT_CODE_FAIL)


async def _generate(config: PipelineConfig, db: str, title: str, poll_timeout: float):
    pipeline = build_pipeline(config, db)
    repository = MenuRepository(db)
    menu, handle = create_menu(repository, pipeline, title, config.tasks.deadline_seconds)
    console.print(f"Menu {menu.id} created, generating image for [bold]{title}[/]")
    result = await wait_for_menu_image(
        repository,
        menu.id,
        interval=config.tasks.poll_interval_seconds,
        timeout=poll_timeout
    )
    if not handle.done:
        handle.cancel()
    return result


@app.command(name="release-holds")
def release_holds(db: str = DB_OPTION):
    """Clear budget holds left behind by crashed generations."""
    try:
        cleared = SqliteSpendLedger(db).clear_reservations()
    except LedgerError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Released {cleared} hold(s)")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
