"""Show command for CLI."""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from justflow.checkpoint import CheckpointStore
from justflow.cli.formatting import (
    format_duration,
    format_json,
    format_status,
    format_timestamp,
    run_duration,
)
from justflow.types import Run

MIN_PREFIX = 4


async def resolve_run(store: CheckpointStore, run_id_prefix: str) -> Run | None:
    """Resolve a run by id or unique prefix (min 4 chars).

    Raises:
        ValueError: prefix too short or ambiguous
    """
    if len(run_id_prefix) < MIN_PREFIX:
        raise ValueError(f"Run ID prefix must be at least {MIN_PREFIX} characters")
    exact = await store.get_run(run_id_prefix)
    if exact is not None:
        return exact
    matches = await store.find_runs_by_prefix(run_id_prefix, limit=2)
    if len(matches) > 1:
        raise ValueError(f"Ambiguous run ID prefix: {run_id_prefix}")
    return matches[0] if matches else None


async def show_command(
    store: CheckpointStore, run_id_prefix: str, console: Console | None = None
) -> bool:
    """Show a run and its step checkpoints. Returns False when not found."""
    console = console or Console()
    try:
        run = await resolve_run(store, run_id_prefix)
    except ValueError as e:
        console.print(f"Error: {e}")
        return False
    if run is None:
        console.print(f"Run not found: {run_id_prefix}")
        return False

    console.print()
    console.print(f"Run: {run.run_id}")
    console.print("=" * 60)
    console.print(f"Function: {run.function_id}")
    console.print(f"Status: {format_status(run.status)}")
    console.print(f"Trigger: {run.trigger.name} ({run.trigger.id})")
    console.print(f"Started: {format_timestamp(run.created_at)}")
    if run.ended_at:
        console.print(f"Ended: {format_timestamp(run.ended_at)}")
        console.print(f"Duration: {format_duration(run_duration(run))}")
    if run.error:
        kind = f" ({run.error_kind.value})" if run.error_kind else ""
        console.print(f"\nError{kind}: {escape(run.error)}")
    if run.output is not None:
        console.print(f"\nOutput: {format_json(run.output, limit=200)}")

    steps = await store.list_steps(run.run_id)
    console.print(f"\nSteps: {len(steps)} checkpointed")
    if steps:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Step", style="cyan")
        table.add_column("Status")
        table.add_column("Attempt", justify="right")
        table.add_column("Result / Error")
        for record in steps:
            if record.error:
                detail = escape(record.error)
            else:
                detail = format_json(record.result)
            if record.wake_at is not None and record.result is None:
                detail = f"wakes {format_timestamp(record.wake_at)}"
            table.add_row(
                record.step_name,
                format_status(record.status),
                str(record.attempt),
                detail,
            )
        console.print(table)

    marker = await store.get_sleep_marker(run.run_id)
    if marker is not None:
        console.print(
            f"\nSleeping until {format_timestamp(marker.wake_at)} "
            f"({marker.reason.value})"
        )
    return True
