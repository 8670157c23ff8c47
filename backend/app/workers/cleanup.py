import logging
import dramatiq
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings
from app.services.queue import queue_service
from app.workers.polling import run_async

logger = logging.getLogger(__name__)

CLEANUP_LOCK_KEY = "generation-queue:cleanup"


def schedule_cleanup(delay_seconds: int = 0) -> None:
    cleanup_old_items.send_with_options(delay=int(delay_seconds * 1000))


async def sweep(db: AsyncSession) -> int:
    removed = await queue_service.cleanup_old_items(db)
    logger.info("[Cleanup] Removed %s terminal items older than %sh", removed, settings.QUEUE_RETENTION_HOURS)
    return removed


async def sweep_async() -> int:
    engine = create_async_engine(settings.DATABASE_URL)
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with session_maker() as db:
            return await sweep(db)
    finally:
        await engine.dispose()


@dramatiq.actor(max_retries=0)
def cleanup_old_items():
    interval = settings.QUEUE_CLEANUP_INTERVAL_SECONDS
    if interval <= 0:
        return
    # Only the holder of the lock sweeps and reschedules, so extra chains die out
    acquired = dramatiq.get_broker().client.set(CLEANUP_LOCK_KEY, "1", nx=True, ex=max(interval - 1, 1))
    if not acquired:
        logger.debug("[Cleanup] Another sweep owns this interval")
        return

    try:
        run_async(sweep_async())
    finally:
        schedule_cleanup(interval)
