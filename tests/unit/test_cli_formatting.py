"""Tests for CLI formatting helpers."""

from datetime import timedelta

import pytest

from justflow.cli.formatting import (
    format_duration,
    format_json,
    format_status,
    format_timestamp,
    parse_data,
    run_duration,
    short_id,
)
from justflow.types import RunStatus, StepStatus
from tests.factories import T0, make_run


@pytest.mark.parametrize(
    "seconds, expected",
    [
        (None, "-"),
        (0.25, "250ms"),
        (12.34, "12.3s"),
        (90, "1.5m"),
        (5400, "1.5h"),
    ],
)
def test_format_duration(seconds: float | None, expected: str) -> None:
    assert format_duration(seconds) == expected


def test_format_timestamp() -> None:
    assert format_timestamp(T0) == "2025-01-01 12:00:00"
    assert format_timestamp(None) == "-"


def test_format_status() -> None:
    assert format_status(RunStatus.FAILED) == "[red]failed[/red]"
    assert format_status(StepStatus.SUCCEEDED) == "[green]succeeded[/green]"
    assert format_status(RunStatus.PENDING) == "pending"


def test_short_id() -> None:
    assert short_id("0123456789abcdef") == "0123456789ab..."
    assert short_id("0123456789abcdef", full=True) == "0123456789abcdef"


def test_run_duration() -> None:
    assert run_duration(make_run()) is None
    finished = make_run(ended_at=T0 + timedelta(seconds=90))
    assert run_duration(finished) == 90


def test_format_json() -> None:
    assert format_json(None) == "-"
    assert format_json({"b": 1, "a": 2}) == '{"a": 2, "b": 1}'
    long = format_json({"text": "x" * 100}, limit=20)
    assert len(long) == 20 and long.endswith("...")


def test_parse_data() -> None:
    assert parse_data(None) == {}
    assert parse_data("") == {}
    assert parse_data('{"a": 1}') == {"a": 1}
    with pytest.raises(ValueError, match="JSON object"):
        parse_data("[1]")
    with pytest.raises(ValueError):
        parse_data("{nope")
