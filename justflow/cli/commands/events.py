"""events command for CLI."""

from __future__ import annotations

from rich.console import Console
from rich.table import Table

from justflow.checkpoint import CheckpointStore
from justflow.cli.formatting import format_json, format_timestamp, short_id


async def events_command(
    store: CheckpointStore,
    name: str | None = None,
    limit: int = 20,
    console: Console | None = None,
) -> None:
    """List events from the durable event log."""
    console = console or Console()
    stored = await store.list_events(name, limit=limit)
    if not stored:
        console.print("No events found")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Seq", justify="right", style="dim")
    table.add_column("Event ID", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Occurred", style="dim")
    table.add_column("Delivered")
    table.add_column("Data")
    for entry in stored:
        table.add_row(
            str(entry.seq),
            short_id(entry.event.id),
            entry.event.name,
            format_timestamp(entry.event.occurred_at),
            "[green]yes[/green]" if entry.delivered else "[yellow]no[/yellow]",
            format_json(entry.event.data, limit=60),
        )
    console.print(table)
    console.print(f"Showing {len(stored)} event(s)")
