import asyncio
import logging
import signal

from gradesync.core.config import settings
from gradesync.core.database import init_db
from gradesync.tasks.grade_sync_worker import GradeSyncWorker
from gradesync.tasks.message_queue import RedisMessageQueue

logger = logging.getLogger(__name__)


async def main():
    await init_db()

    worker = GradeSyncWorker(RedisMessageQueue())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker._shutdown_event.set)

    logger.info(f"{settings.APP_NAME} worker listening on {settings.GRADE_SYNC_QUEUE_NAME}")
    await worker.run_forever()


if __name__ == "__main__":
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    asyncio.run(main())
