"""Runtime configuration resolved from explicit values or JUSTFLOW_* env vars."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path


def _resolve_bool_flag(explicit: bool | None, env_var: str) -> bool:
    """Resolve a boolean flag from explicit value or environment variable."""
    if explicit is not None:
        return explicit

    raw = os.getenv(env_var)
    if raw is None:
        return False

    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _resolve_float(explicit: float | None, env_var: str, default: float) -> float:
    if explicit is not None:
        return explicit
    raw = os.getenv(env_var)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{env_var} must be a number, got {raw!r}") from None


def resolve_storage_path() -> Path:
    """Resolve the base storage directory from env or default.

    Reads JUSTFLOW_STORAGE_PATH env var, falls back to ~/.justflow.
    """
    raw = os.getenv("JUSTFLOW_STORAGE_PATH")
    if raw:
        return Path(raw).expanduser()
    return Path.home() / ".justflow"


@dataclass(frozen=True)
class FlowConfig:
    storage_path: Path = field(default_factory=resolve_storage_path)
    base_url: str = "http://localhost:3003"
    signing_key: str = ""
    signing_header: str = "x-justflow-internal"
    reaper_interval: float = 1.0
    liveness_window: float = 300.0
    idempotency_window: float = 86400.0
    http_timeout: float = 30.0
    debug: bool = False

    @property
    def db_path(self) -> Path:
        return self.storage_path / "flow.db"

    @classmethod
    def from_env(
        cls,
        *,
        storage_path: str | Path | None = None,
        base_url: str | None = None,
        signing_key: str | None = None,
        reaper_interval: float | None = None,
        liveness_window: float | None = None,
        idempotency_window: float | None = None,
        http_timeout: float | None = None,
        debug: bool | None = None,
    ) -> FlowConfig:
        """Build a config, falling back to environment variables per field."""
        return cls(
            storage_path=(
                Path(storage_path).expanduser()
                if storage_path is not None
                else resolve_storage_path()
            ),
            base_url=(
                base_url
                or os.getenv("JUSTFLOW_BASE_URL")
                or "http://localhost:3003"
            ).rstrip("/"),
            signing_key=(
                signing_key
                if signing_key is not None
                else os.getenv("JUSTFLOW_SIGNING_KEY", "")
            ),
            reaper_interval=_resolve_float(
                reaper_interval, "JUSTFLOW_REAPER_INTERVAL", 1.0
            ),
            liveness_window=_resolve_float(
                liveness_window, "JUSTFLOW_LIVENESS_WINDOW", 300.0
            ),
            idempotency_window=_resolve_float(
                idempotency_window, "JUSTFLOW_IDEMPOTENCY_WINDOW", 86400.0
            ),
            http_timeout=_resolve_float(http_timeout, "JUSTFLOW_HTTP_TIMEOUT", 30.0),
            debug=_resolve_bool_flag(debug, "JUSTFLOW_DEBUG"),
        )


def configure_logging(debug: bool = False) -> None:
    """Attach a stderr handler to the ``justflow`` logger (idempotent)."""
    logger = logging.getLogger("justflow")
    if any(getattr(h, "_justflow_stderr", False) for h in logger.handlers):
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s")
    )
    handler._justflow_stderr = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
