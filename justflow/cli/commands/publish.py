"""publish command for CLI."""

from __future__ import annotations

from typing import Any

from justflow.bus import EventBus
from justflow.checkpoint import CheckpointStore


async def publish_command(
    store: CheckpointStore,
    name: str,
    data: dict[str, Any],
    event_id: str | None = None,
) -> str:
    """Validate and append an event to the log.

    The event is delivered by the next worker tick that recovers undelivered
    events; this process does not run any functions.
    """
    bus = EventBus(store)
    return await bus.publish(name, data, id=event_id)
