"""Clock abstraction so durable sleeps can be driven by tests."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Protocol

from justflow.types import utc_now


class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return utc_now()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
