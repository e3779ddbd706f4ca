"""runs command for CLI."""

from __future__ import annotations

from rich.console import Console
from rich.table import Table

from justflow.checkpoint import CheckpointStore
from justflow.cli.formatting import (
    format_duration,
    format_status,
    format_timestamp,
    run_duration,
    short_id,
)
from justflow.types import RunStatus


async def runs_command(
    store: CheckpointStore,
    function_id: str | None = None,
    status: RunStatus | None = None,
    limit: int = 10,
    full_ids: bool = False,
    console: Console | None = None,
) -> None:
    """List runs, newest first.

    Args:
        store: Checkpoint store
        function_id: Filter by function id
        status: Filter by status
        limit: Maximum number of runs
        full_ids: Show full run IDs instead of short (12 chars)
    """
    console = console or Console()
    runs = await store.list_runs(
        function_id, statuses=[status] if status else None, limit=limit
    )

    if not runs:
        console.print("No runs found")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Run ID", style="cyan", no_wrap=full_ids)
    table.add_column("Function", style="green")
    table.add_column("Status")
    table.add_column("Step", justify="right")
    table.add_column("Started", style="dim")
    table.add_column("Duration", justify="right")

    for run in runs:
        table.add_row(
            short_id(run.run_id, full_ids),
            run.function_id,
            format_status(run.status),
            str(run.current_step_index),
            format_timestamp(run.created_at),
            format_duration(run_duration(run)),
        )

    console.print(table)
    console.print()
    console.print(f"Showing {len(runs)} run(s)")
    if len(runs) >= limit:
        console.print(f"(Limited to {limit}, use --limit to show more)")
    if not full_ids:
        console.print()
        console.print("Tip: Use run ID prefix (min 4 chars) in other commands")
        console.print(f"   Example: justflow show {runs[0].run_id[:8]}")
