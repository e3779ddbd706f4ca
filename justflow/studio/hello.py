"""System check function: proves the orchestration wiring end to end."""

from __future__ import annotations

import logging
from typing import Any

from justflow.registry import FunctionRegistry
from justflow.types import StepContext

logger = logging.getLogger("justflow.studio.hello")

DEFAULT_GREETING = "Hello from Marketing Studio!"


def register_hello(registry: FunctionRegistry) -> None:
    fn = registry.function("hello", trigger="hello", name="Studio Hello Test")

    @fn.step("generate-greeting")
    def generate_greeting(ctx: StepContext) -> dict[str, Any]:
        logger.info("Hello function started for event %s", ctx.event.id)
        return {
            "message": ctx.data.get("message") or DEFAULT_GREETING,
            "generatedAt": ctx.now.isoformat(),
        }
