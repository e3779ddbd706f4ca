"""cancel command for CLI."""

from __future__ import annotations

from datetime import datetime, timezone

from rich.console import Console

from justflow.checkpoint import CheckpointStore
from justflow.cli.commands.show import resolve_run
from justflow.types import RunStatus


async def cancel_command(
    store: CheckpointStore,
    run_id_prefix: str,
    reason: str = "Cancelled from CLI",
    console: Console | None = None,
) -> bool:
    """Cancel a non-terminal run from outside the worker.

    The run is moved to Cancelled and its marker, queued admission and slot
    are dropped. A worker still driving it stops before its next step and
    admits queued runs into the freed slot on its next tick.
    """
    console = console or Console()
    try:
        run = await resolve_run(store, run_id_prefix)
    except ValueError as e:
        console.print(f"Error: {e}")
        return False
    if run is None:
        console.print(f"Run not found: {run_id_prefix}")
        return False

    now = datetime.now(timezone.utc)
    moved = await store.transition_run(
        run.run_id, RunStatus.CANCELLED, now, error=reason
    )
    if not moved:
        console.print(f"Run {run.run_id} is already {run.status.value}")
        return False
    await store.delete_sleep_marker(run.run_id)
    await store.remove_deferred(run.function_id, run.trigger.id)
    await store.release_slot(run.function_id, run.run_id)
    console.print(f"Cancelled run {run.run_id} ({run.function_id})")
    return True
