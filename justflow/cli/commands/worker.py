"""worker command for CLI."""

from __future__ import annotations

import logging

from justflow.config import FlowConfig
from justflow.studio import InternalApi, create_studio_registry
from justflow.worker import Worker

logger = logging.getLogger("justflow.worker")


async def worker_command(config: FlowConfig) -> None:
    """Run the studio functions until interrupted."""
    async with InternalApi.from_config(config) as api:
        worker = Worker(create_studio_registry(api), config=config)
        logger.info(
            "Serving %s against %s",
            ", ".join(fn.id for fn in worker.registry.functions()),
            config.base_url,
        )
        await worker.run_forever()
