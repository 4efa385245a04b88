"""
Service Context

The process-wide collaborators (queue client, object store, submission
service) are built once at start-up and passed down explicitly. Neither
the API nor the worker creates clients per request.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .config import GeneratorSettings
from .queue import JobQueue
from .storage import ObjectStore
from .submission import SubmissionService

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    """Long-lived collaborators shared by one process."""

    settings: GeneratorSettings
    queue: JobQueue
    submission: SubmissionService
    store: Optional[ObjectStore] = None

    @classmethod
    def build(
        cls,
        settings: GeneratorSettings,
        queue: Optional[JobQueue] = None,
        store: Optional[ObjectStore] = None,
        with_store: bool = False,
    ) -> "ServiceContext":
        """
        Construct the context.

        Args:
            settings: Validated settings
            queue: Pre-built queue (tests); otherwise created from settings
            store: Pre-built object store (tests)
            with_store: Create an ObjectStore from settings (worker process)
        """
        queue = queue or JobQueue.from_settings(settings)
        if store is None and with_store:
            store = ObjectStore.from_settings(settings)
        return cls(
            settings=settings,
            queue=queue,
            submission=SubmissionService(queue, settings),
            store=store,
        )

    async def start(self) -> None:
        await self.queue.connect()
        logger.info("Service context started")

    async def close(self) -> None:
        await self.queue.disconnect()
        logger.info("Service context closed")
