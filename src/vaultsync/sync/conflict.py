"""Conflict detection and resolution for exports.

A conflict exists when Notion has been edited after the watermark the
local note last recorded. Resolution is whole-document: one side wins.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional

from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

from .notion import parse_timestamp


class ConflictResolution(str, Enum):
    """Resolution strategy for conflicts."""

    KEEP_LOCAL = "keep_local"  # Push the local note over Notion
    KEEP_REMOTE = "keep_remote"  # Overwrite the local note from Notion
    CANCEL = "cancel"  # Leave both sides alone


@dataclass
class SyncConflict:
    """Represents a conflict between a local note and its Notion page."""

    path: str
    page_id: str
    local_watermark: datetime
    remote_modified: datetime
    title: str = ""

    def __repr__(self) -> str:
        return f"SyncConflict({self.path!r}, page={self.page_id})"


ConflictResolver = Callable[[SyncConflict], Awaitable[ConflictResolution]]


def is_remote_newer(remote: Optional[str], local: Optional[str]) -> bool:
    """True when both timestamps parse and the remote one is strictly later."""
    remote_dt = parse_timestamp(remote)
    local_dt = parse_timestamp(local)
    if remote_dt is None or local_dt is None:
        return False
    return remote_dt > local_dt


def detect_conflict(
    path: str,
    page_id: str,
    local_watermark: Optional[str],
    remote_last_edited: Optional[str],
    title: str = "",
) -> Optional[SyncConflict]:
    """Detect if Notion changed since the note last synced.

    Args:
        path: Note path inside the vault
        page_id: Linked Notion page
        local_watermark: ``last_edited_time`` from the note header
        remote_last_edited: Current ``last_edited_time`` of the page
        title: Note title, for display

    Returns:
        SyncConflict if the remote is newer, None otherwise (including when
        the note has no watermark yet)
    """
    if not is_remote_newer(remote_last_edited, local_watermark):
        return None

    return SyncConflict(
        path=path,
        page_id=page_id,
        local_watermark=parse_timestamp(local_watermark),
        remote_modified=parse_timestamp(remote_last_edited),
        title=title,
    )


console = Console()


def _prompt(conflict: SyncConflict) -> ConflictResolution:
    console.print("\n" + "=" * 60)
    console.print("[bold yellow]SYNC CONFLICT: Notion version is newer[/bold yellow]")
    console.print("=" * 60 + "\n")

    table = Table(title="Version Comparison", show_header=True)
    table.add_column("Field", style="cyan", width=15)
    table.add_column("Local", width=30)
    table.add_column("Notion", width=30)
    table.add_row("Note", conflict.title or conflict.path, conflict.page_id)
    table.add_row(
        "Modified",
        f"[yellow]{conflict.local_watermark.isoformat()}[/yellow]",
        f"[cyan]{conflict.remote_modified.isoformat()}[/cyan]",
    )
    console.print(table)

    console.print("\n[bold]Resolution Options:[/bold]")
    console.print("  [cyan]1[/cyan] - Keep local version (overwrite Notion)")
    console.print("  [cyan]2[/cyan] - Keep Notion version (overwrite local)")
    console.print("  [cyan]3[/cyan] - Cancel")

    choice = Prompt.ask(
        "\nYour choice",
        choices=["1", "2", "3"],
        default="3",
    )

    resolution_map = {
        "1": ConflictResolution.KEEP_LOCAL,
        "2": ConflictResolution.KEEP_REMOTE,
        "3": ConflictResolution.CANCEL,
    }

    resolution = resolution_map[choice]
    console.print(f"\n[green]Resolution: {resolution.value}[/green]")
    return resolution


async def resolve_conflict_interactive(conflict: SyncConflict) -> ConflictResolution:
    """Ask the user on the terminal how to resolve a conflict.

    The prompt blocks on stdin, so it runs in a worker thread and the
    event loop keeps serving other work meanwhile.
    """
    return await asyncio.to_thread(_prompt, conflict)


def policy_resolver(resolution: ConflictResolution) -> ConflictResolver:
    """Resolver that always answers ``resolution`` (for unattended runs)."""

    async def resolve(conflict: SyncConflict) -> ConflictResolution:
        return resolution

    return resolve
