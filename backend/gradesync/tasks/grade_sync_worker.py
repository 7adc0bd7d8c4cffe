"""
Background worker consuming grade sync queue messages.
"""

import asyncio
import logging
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from gradesync.core.config import settings
from gradesync.core.database import AsyncSessionLocal
from gradesync.integrations.error_handler import SyncErrorHandler, error_context
from gradesync.integrations.gradebook.client import GradebookClient
from gradesync.integrations.roster.client import GraphRosterClient
from gradesync.schemas.sync import GradeSyncQueueMessage
from gradesync.services.sync.job_orchestrator import GradeSyncJobOrchestrator
from gradesync.services.sync.storage import GradeSyncStore
from gradesync.tasks.message_queue import MessageQueue

logger = logging.getLogger(__name__)


class GradeSyncWorker:
    """
    Pulls job triggers off the queue and runs one orchestrator per message.

    Each message gets its own database session and its own gradebook and
    roster clients, so token state never leaks between jobs.
    """

    def __init__(
        self,
        queue: MessageQueue,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        gradebook_factory: Callable[[], GradebookClient] = GradebookClient,
        roster_factory: Callable[[], GraphRosterClient] = GraphRosterClient,
        poll_timeout: Optional[int] = None
    ):
        self.queue = queue
        self.session_factory = session_factory
        self.gradebook_factory = gradebook_factory
        self.roster_factory = roster_factory
        self.poll_timeout = poll_timeout or settings.WORKER_POLL_TIMEOUT_SECONDS
        self.error_handler = SyncErrorHandler()
        self._task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start consuming messages in the background."""
        logger.info("Starting grade sync worker")
        self._shutdown_event.clear()
        self._task = asyncio.create_task(self._consume_loop())

    async def stop(self) -> None:
        """Stop consuming. A job in flight is cancelled."""
        logger.info("Stopping grade sync worker")
        self._shutdown_event.set()

        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        self._task = None
        await self.queue.close()
        logger.info("Grade sync worker stopped")

    async def run_forever(self) -> None:
        await self.start()
        try:
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    async def _consume_loop(self) -> None:
        logger.info("Started grade sync consume loop")

        while not self._shutdown_event.is_set():
            try:
                raw_message = await self.queue.receive(self.poll_timeout)
                if raw_message is not None:
                    await self.handle_message(raw_message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in grade sync consume loop: {e}")
                await asyncio.sleep(self.poll_timeout)

        logger.info("Grade sync consume loop stopped")

    async def handle_message(self, raw_message: str) -> None:
        """
        Run the job referenced by one raw queue message.

        Malformed messages are logged and dropped.
        """
        try:
            message = GradeSyncQueueMessage.model_validate_json(raw_message)
        except ValidationError as e:
            logger.error(f"Dropping malformed grade sync message: {e}")
            return

        logger.info(f"Processing grade sync job {message.job_id} for class {message.class_id}")

        async with error_context("grade sync job", job_id=message.job_id, error_handler=self.error_handler):
            async with self.session_factory() as db:
                async with self.roster_factory() as roster, self.gradebook_factory() as gradebook:
                    orchestrator = GradeSyncJobOrchestrator(
                        GradeSyncStore(db), roster, gradebook, error_handler=self.error_handler
                    )
                    await orchestrator.run(message)
