"""Client for the studio's internal HTTP service boundary.

Every side-effecting studio step goes through :class:`InternalApi`. Requests
carry the internal signing header; failures are raised as ``StepError``
subclasses so the retry handler can tell transient from terminal errors.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Mapping
from datetime import datetime
from typing import Any

import httpx

from justflow._internal.utils import stable_hash
from justflow.config import FlowConfig
from justflow.failures import classify_status
from justflow.types import (
    ErrorKind,
    ProviderFailure,
    StepError,
    TransientFailure,
    ValidationFailure,
)

logger = logging.getLogger("justflow.http")

_ERRORS: dict[ErrorKind, type[StepError]] = {
    ErrorKind.TRANSIENT: TransientFailure,
    ErrorKind.PROVIDER_TERMINAL: ProviderFailure,
    ErrorKind.VALIDATION: ValidationFailure,
}


def idempotency_key(*parts: Any, window: float, now: datetime) -> str:
    """Key that is stable for the same ``parts`` within one time bucket.

    Two publishes of the same workspace and text on the same day share a key
    with ``window=86400``; the receiving service drops the duplicate.
    """
    if window <= 0:
        raise ValueError("Idempotency window must be positive")
    bucket = math.floor(now.timestamp() / window)
    return stable_hash(*parts, bucket)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, Mapping) and body.get("error"):
        return str(body["error"])
    text = response.text.strip()
    return text[:200] if text else response.reason_phrase


class InternalApi:
    """Thin async wrapper over ``httpx.AsyncClient``.

    Example:
        async with InternalApi.from_config(FlowConfig.from_env()) as api:
            job = await api.get(f"/api/studio/video-jobs/{job_id}")
    """

    def __init__(
        self,
        base_url: str,
        *,
        signing_key: str = "",
        signing_header: str = "x-justflow-internal",
        timeout: float = 30.0,
        idempotency_window: float = 86400.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.idempotency_window = idempotency_window
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={signing_header: signing_key},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls, config: FlowConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> InternalApi:
        return cls(
            config.base_url,
            signing_key=config.signing_key,
            signing_header=config.signing_header,
            timeout=config.http_timeout,
            idempotency_window=config.idempotency_window,
            transport=transport,
        )

    async def __aenter__(self) -> InternalApi:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        """Send one request and return the decoded JSON body (or None)."""
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        start = time.perf_counter()
        try:
            response = await self._client.request(
                method, path, json=json, params=params, headers=headers
            )
        except httpx.TransportError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise TransientFailure(f"{method} {path} failed: {exc}") from exc
        logger.debug(
            "%s %s -> %d in %.4fs",
            method,
            path,
            response.status_code,
            time.perf_counter() - start,
        )

        if response.is_error:
            kind = classify_status(response.status_code)
            message = (
                f"{method} {path} returned {response.status_code}: "
                f"{_error_message(response)}"
            )
            raise _ERRORS[kind](message)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise TransientFailure(
                f"{method} {path} returned a non-JSON body"
            ) from exc

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Any:
        return await self.request("POST", path, **kwargs)

    async def patch(self, path: str, **kwargs: Any) -> Any:
        return await self.request("PATCH", path, **kwargs)
