"""Main CLI entry point for justflow commands."""

import asyncio
import json
from typing import Any

import click

from justflow.config import FlowConfig, configure_logging
from justflow.types import EventValidationError, RunStatus


def get_config() -> FlowConfig:
    """Resolve configuration from JUSTFLOW_* environment variables."""
    return FlowConfig.from_env()


def get_store() -> Any:
    """Get the checkpoint store of the configured storage path."""
    from justflow.checkpoint import CheckpointStore
    from justflow.storage import SQLiteBackend

    return CheckpointStore(SQLiteBackend(get_config().db_path))


# CLI commands
async def list_runs(
    function_id: str | None = None,
    status: str | None = None,
    limit: int = 10,
    full_ids: bool = False,
) -> None:
    """List runs."""
    from justflow.cli.commands.runs import runs_command

    await runs_command(
        get_store(),
        function_id,
        RunStatus(status) if status else None,
        limit,
        full_ids,
    )


async def show_run(run_id: str) -> bool:
    """Show details of a specific run."""
    from justflow.cli.commands.show import show_command

    return await show_command(get_store(), run_id)


async def list_events(name: str | None = None, limit: int = 20) -> None:
    """List logged events."""
    from justflow.cli.commands.events import events_command

    await events_command(get_store(), name, limit)


async def publish_event(name: str, data: dict[str, Any], event_id: str | None) -> str:
    """Publish an event to the durable log."""
    from justflow.cli.commands.publish import publish_command

    return await publish_command(get_store(), name, data, event_id)


async def cancel_run(run_id: str, reason: str) -> bool:
    """Cancel a run."""
    from justflow.cli.commands.cancel import cancel_command

    return await cancel_command(get_store(), run_id, reason)


async def run_worker(config: FlowConfig) -> None:
    """Run the studio worker."""
    from justflow.cli.commands.worker import worker_command

    await worker_command(config)


@click.group()
@click.version_option(package_name="justflow")
def cli() -> None:
    """justflow - durable event-triggered workflows."""
    pass


@cli.command("runs")
@click.option(
    "--function",
    "-f",
    "function_id",
    help="Filter by function id",
)
@click.option(
    "--status",
    "-s",
    type=click.Choice([s.value for s in RunStatus]),
    help="Filter by status",
)
@click.option(
    "--limit",
    "-n",
    default=10,
    help="Maximum number of runs to show",
)
@click.option(
    "--full",
    is_flag=True,
    help="Show full run IDs",
)
def runs_command_cli(function_id: Any, status: Any, limit: Any, full: Any) -> None:
    """List runs, newest first."""
    asyncio.run(list_runs(function_id, status, limit, full))


@cli.command("show")
@click.argument("run_id")
def show_command_cli(run_id: Any) -> None:
    """Show a run and its step checkpoints."""
    if not asyncio.run(show_run(run_id)):
        raise SystemExit(1)


@cli.command("events")
@click.option(
    "--name",
    help="Filter by event name",
)
@click.option(
    "--limit",
    "-n",
    default=20,
    help="Maximum number of events to show",
)
def events_command_cli(name: Any, limit: Any) -> None:
    """List events in the durable log."""
    asyncio.run(list_events(name, limit))


@cli.command("publish")
@click.argument("name")
@click.option(
    "--data",
    "-d",
    default="{}",
    help="Event payload as a JSON object",
)
@click.option(
    "--id",
    "event_id",
    help="Explicit event id (publishing an existing id is a no-op)",
)
def publish_command_cli(name: Any, data: Any, event_id: Any) -> None:
    """Publish an event; a running worker picks it up."""
    from justflow.cli.formatting import parse_data

    try:
        payload = parse_data(data)
    except (json.JSONDecodeError, ValueError) as e:
        raise click.BadParameter(str(e), param_hint="--data") from None
    try:
        published = asyncio.run(publish_event(name, payload, event_id))
    except EventValidationError as e:
        raise click.ClickException(str(e)) from None
    click.echo(published)


@cli.command("cancel")
@click.argument("run_id")
@click.option(
    "--reason",
    "-r",
    default="Cancelled from CLI",
    help="Reason stored on the run",
)
def cancel_command_cli(run_id: Any, reason: Any) -> None:
    """Cancel a pending, running or sleeping run."""
    if not asyncio.run(cancel_run(run_id, reason)):
        raise SystemExit(1)


@cli.command("worker")
@click.option(
    "--debug",
    is_flag=True,
    help="Verbose logging (also JUSTFLOW_DEBUG=1)",
)
def worker_command_cli(debug: Any) -> None:
    """Run the studio functions until interrupted."""
    config = FlowConfig.from_env(debug=debug or None)
    configure_logging(config.debug)
    try:
        asyncio.run(run_worker(config))
    except KeyboardInterrupt:
        click.echo("Worker stopped")


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
