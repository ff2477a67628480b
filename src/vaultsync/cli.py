"""Command-line interface for vaultsync.

Built with Typer for commands and Rich for output.
"""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import Config, get_config
from .logging_setup import setup_logging

# Create the main app
app = typer.Typer(
    name="vaultsync",
    help="Keep a folder of markdown notes in sync with a Notion database.",
    no_args_is_help=True,
)

# Rich console for pretty output
console = Console()


# ============================================================================
# Helper Functions
# ============================================================================


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[bold red]Error:[/bold red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[bold green]Success:[/bold green] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[bold yellow]Warning:[/bold yellow] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[dim]{message}[/dim]")


def print_result(result, heading: str) -> None:
    """Print a SyncResult summary and exit non-zero on errors."""
    console.print("\n" + "=" * 40)
    console.print(f"[bold]{heading}[/bold]")
    console.print("=" * 40)
    console.print(f"  Imported from Notion: {result.imported}")
    console.print(f"  Updated from Notion: {result.updated}")
    console.print(f"  Pushed to Notion: {result.exported}")
    if result.skipped:
        console.print(f"  Skipped: {result.skipped}")
    if result.errors:
        print_error(f"{len(result.errors)} errors occurred")
        for target, error in result.errors[:5]:
            console.print(f"  [red]- {target}: {error}[/red]")
        raise typer.Exit(1)
    console.print("\n[green]✓ Sync successful![/green]")


def _require_notion(config: Config) -> None:
    if not config.has_notion_config():
        print_error("Notion not configured. Set NOTION_API_KEY and NOTION_DATABASE_ID.")
        raise typer.Exit(1)


def _require_bidirectional(config: Config) -> None:
    if not config.bidirectional_sync:
        print_error("Bidirectional sync is not enabled. Set VAULTSYNC_BIDIRECTIONAL=true.")
        raise typer.Exit(1)


def build_engine(config: Config, yes: bool = False):
    """Create a SyncEngine over the configured vault and Notion database.

    Args:
        config: Settings to use
        yes: Resolve conflicts without prompting (Notion wins)
    """
    from .storage import Vault
    from .sync import (
        ConflictResolution,
        NotionClient,
        NotionConfigError,
        SyncEngine,
        policy_resolver,
        resolve_conflict_interactive,
    )

    try:
        client = NotionClient(config.notion_api_key, config.notion_database_id)
    except NotionConfigError as e:
        print_error(str(e))
        raise typer.Exit(1)

    resolver = (
        policy_resolver(ConflictResolution.KEEP_REMOTE) if yes else resolve_conflict_interactive
    )
    return SyncEngine(
        client,
        vault=Vault(config.vault_path),
        config=config,
        resolver=resolver,
    )


@app.callback()
def main_callback() -> None:
    """Configure logging before any command runs."""
    config = get_config()
    setup_logging(config.log_level, config.log_file)


# ============================================================================
# Sync Commands
# ============================================================================


@app.command("import")
def import_cmd(
    no_progress: bool = typer.Option(False, "--no-progress", help="Hide the progress bar"),
) -> None:
    """Import every page of the Notion database into the vault."""
    config = get_config()
    _require_notion(config)
    engine = build_engine(config)

    async def run():
        try:
            return await engine.import_all(show_progress=not no_progress)
        finally:
            await engine.close()

    result = asyncio.run(run())
    if result is None:
        print_warning("An import is already running.")
        return
    print_result(result, "Import Complete")


@app.command()
def export(
    path: str = typer.Argument(..., help="Note path relative to the vault root"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Auto-resolve conflicts (Notion wins)"),
) -> None:
    """Push one note to its linked Notion page."""
    from .storage import Vault

    config = get_config()
    _require_notion(config)
    if not Vault(config.vault_path).exists(path):
        print_error(f"No such note: {path}")
        raise typer.Exit(1)
    engine = build_engine(config, yes=yes)

    async def run():
        try:
            return await engine.export_document(path)
        finally:
            await engine.close()

    if not asyncio.run(run()):
        print_warning(f"{path} was not exported.")
        raise typer.Exit(1)


@app.command()
def sync(
    yes: bool = typer.Option(False, "--yes", "-y", help="Auto-resolve conflicts (Notion wins)"),
) -> None:
    """Push every note edited locally since its last sync."""
    config = get_config()
    _require_notion(config)
    _require_bidirectional(config)
    engine = build_engine(config, yes=yes)

    async def run():
        try:
            return await engine.sync_all()
        finally:
            await engine.close()

    result = asyncio.run(run())
    if not (result.exported or result.updated or result.errors):
        console.print("[green]✓[/green] No local changes to push.")
        return
    print_result(result, "Sync Complete")


@app.command()
def bidirectional(
    yes: bool = typer.Option(False, "--yes", "-y", help="Auto-resolve conflicts (Notion wins)"),
    no_progress: bool = typer.Option(False, "--no-progress", help="Hide the progress bar"),
) -> None:
    """Import from Notion, then push local changes."""
    config = get_config()
    _require_notion(config)
    _require_bidirectional(config)
    engine = build_engine(config, yes=yes)

    async def run():
        try:
            return await engine.run_bidirectional(show_progress=not no_progress)
        finally:
            await engine.close()

    result = asyncio.run(run())
    if result is None:
        print_warning("A two-way sync is already running.")
        return
    print_result(result, "Sync Complete")


@app.command()
def watch(
    interval: Optional[int] = typer.Option(
        None, "--interval", "-i", help="Minutes between imports (default from config)"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Auto-resolve conflicts (Notion wins)"),
) -> None:
    """Import periodically and push notes as they are edited."""
    from .watcher import VaultWatcher

    config = get_config()
    _require_notion(config)
    engine = build_engine(config, yes=yes)

    async def run():
        watcher = None
        if config.bidirectional_sync:
            watcher = VaultWatcher(config.vault_path, engine.notify_modified)
            watcher.start()
        try:
            await engine.import_all(show_progress=False)
            await engine.run_periodic(interval)
        finally:
            if watcher is not None:
                watcher.stop()
            await engine.close()

    console.print(
        f"[bold]Watching[/bold] {config.vault_path} "
        f"(import every {interval or config.import_interval} min). Press Ctrl+C to stop."
    )
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/dim]")


# ============================================================================
# Notion Commands
# ============================================================================


@app.command()
def databases(
    query: Optional[str] = typer.Argument(None, help="Filter databases by title"),
) -> None:
    """List the Notion databases shared with the integration."""
    from .sync import NotionClient, NotionConfigError, NotionError, RetryExecutor
    from .sync.fetch import search_databases

    config = get_config()
    try:
        client = NotionClient(config.notion_api_key, require_database=False)
    except NotionConfigError as e:
        print_error(str(e))
        raise typer.Exit(1)

    try:
        found = asyncio.run(search_databases(client, RetryExecutor(), query))
    except NotionError as e:
        print_error(f"Notion API error: {e}")
        raise typer.Exit(1)

    if not found:
        console.print("[yellow]No databases found.[/yellow]")
        return

    table = Table(title="Notion Databases", show_header=True, header_style="bold magenta")
    table.add_column("", width=2)
    table.add_column("Title", style="cyan")
    table.add_column("ID", style="dim")
    for database in found:
        table.add_row(database.icon or "", database.title, database.id)
    console.print(table)


@app.command()
def auth() -> None:
    """Check that the Notion token works."""
    from .sync import NotionClient, NotionConfigError, RetryExecutor
    from .sync.fetch import check_auth

    config = get_config()
    try:
        client = NotionClient(config.notion_api_key, require_database=False)
    except NotionConfigError as e:
        print_error(str(e))
        raise typer.Exit(1)

    ok, message = asyncio.run(check_auth(client, RetryExecutor()))
    if not ok:
        print_error(message)
        raise typer.Exit(1)
    print_success("Notion token is valid.")


@app.command()
def status() -> None:
    """Show configuration and linked notes."""
    from .storage import Vault, path_is_within_folder

    config = get_config()

    table = Table(title="Configuration", show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Vault", str(config.vault_path))
    table.add_row("Destination folder", config.destination_folder)
    table.add_row("Database", config.notion_database_id or "[red]not set[/red]")
    table.add_row("Token", "set" if config.notion_api_key else "[red]not set[/red]")
    table.add_row("Bidirectional sync", "on" if config.bidirectional_sync else "off")
    table.add_row("Import interval", f"{config.import_interval} min")
    table.add_row(
        "Rate limit", f"{config.requests_per_second}/s (burst {config.burst_size})"
    )
    console.print(table)

    for problem in config.validate():
        print_warning(problem)

    vault = Vault(config.vault_path)
    folder = config.destination_folder
    notes = [p for p in vault.list_all_documents() if path_is_within_folder(p, folder)]
    linked = vault.page_id_index(folder)
    console.print(
        Panel(
            f"[bold]{len(linked)}[/bold] linked notes of {len(notes)} in {folder or 'vault'}",
            title="Sync Status",
        )
    )


@app.command()
def version() -> None:
    """Show version information."""
    from . import __version__

    console.print(f"vaultsync version {__version__}")


# ============================================================================
# Main Entry Point
# ============================================================================


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
