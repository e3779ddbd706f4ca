import hashlib
import json
import uuid
from collections.abc import Iterable
from typing import Any

_RUN_NAMESPACE = uuid.UUID("6f1c2f9e-5d0a-4b1e-9a57-3c1f0d7e8a42")


def format_duration(seconds: float | None) -> str:
    """Format duration for display.

    Shared by CLI formatting and run detail rendering.
    """
    if seconds is None:
        return "-"
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        return f"{seconds / 60:.1f}m"
    return f"{seconds / 3600:.1f}h"


def derive_run_id(function_id: str, event_id: str) -> str:
    """Deterministic run id: redelivering an event reaches the same run."""
    return uuid.uuid5(_RUN_NAMESPACE, f"{function_id}:{event_id}").hex


def derive_event_id(run_id: str, step_name: str) -> str:
    """Deterministic id for events emitted by a step or a failure hook."""
    return uuid.uuid5(_RUN_NAMESPACE, f"{run_id}:{step_name}").hex


def stable_hash(*parts: Any) -> str:
    """sha256 over the JSON encoding of ``parts``."""
    content = json.dumps(list(parts), sort_keys=True, default=str)
    return hashlib.sha256(content.encode()).hexdigest()


def suggest_similar(
    target: str, candidates: Iterable[str], cutoff: float = 0.6
) -> str | None:
    """Suggest a similar string from candidates using fuzzy matching.

    Args:
        target: The string to find matches for
        candidates: Collection of candidate strings
        cutoff: Similarity threshold (0.0 to 1.0)

    Returns:
        Best matching candidate or None if no good match found
    """
    from difflib import get_close_matches

    matches = get_close_matches(target, candidates, n=1, cutoff=cutoff)
    return matches[0] if matches else None
