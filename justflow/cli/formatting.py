"""Shared formatting helpers for CLI commands."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from justflow._internal.utils import format_duration
from justflow.types import Run, RunStatus, StepStatus

__all__ = ["format_duration"]  # re-exported from _internal.utils


def format_timestamp(dt: datetime | None) -> str:
    """Format a datetime for display."""
    if dt is None:
        return "-"
    return dt.strftime("%Y-%m-%d %H:%M:%S")


_STATUS_COLORS = {
    RunStatus.COMPLETED.value: "green",
    RunStatus.FAILED.value: "red",
    RunStatus.RUNNING.value: "yellow",
    RunStatus.SLEEPING.value: "blue",
    RunStatus.CANCELLED.value: "yellow",
    StepStatus.SUCCEEDED.value: "green",
}


def format_status(status: RunStatus | StepStatus) -> str:
    """Format status with rich markup color."""
    value = status.value
    color = _STATUS_COLORS.get(value)
    if color:
        return f"[{color}]{value}[/{color}]"
    return value


def short_id(run_id: str, full: bool = False) -> str:
    """Shorten a run ID for display."""
    if full:
        return run_id
    return run_id[:12] + "..."


def run_duration(run: Run) -> float | None:
    if run.ended_at is None:
        return None
    return (run.ended_at - run.created_at).total_seconds()


def format_json(value: Any, limit: int = 80) -> str:
    """Compact JSON preview of a step result or event payload."""
    if value is None:
        return "-"
    text = json.dumps(value, sort_keys=True, default=str)
    return text if len(text) <= limit else text[: limit - 3] + "..."


def parse_data(raw: str | None) -> dict[str, Any]:
    """Parse a ``--data`` option into an event payload object."""
    if not raw:
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("Event data must be a JSON object")
    return data
