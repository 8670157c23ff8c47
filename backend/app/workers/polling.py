import asyncio
import logging
import dramatiq
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings
from app.exceptions import RecordNotFound
from app.models.generation import Generation
from app.services.notifications import notification_service
from app.services.poller import job_poller
from app.services.task_events import log_task_event, EventType

logger = logging.getLogger(__name__)


def run_async(coro):
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def schedule_next_poll(user_id: str, generation_id: str, poll_number: int) -> None:
    poll_generation.send_with_options(
        args=(user_id, generation_id, poll_number + 1),
        delay=int(job_poller.delay_for(poll_number + 1) * 1000),
    )


async def poll_once(db: AsyncSession, user_id: str, generation_id: str, poll_number: int) -> bool:
    """Resolve an item once. Returns True when another poll should follow."""
    try:
        generation: Generation = await job_poller.resolve(db, user_id, generation_id, poll_number)
    except RecordNotFound:
        logger.warning("[Polling] Item %s no longer exists", generation_id)
        return False

    if generation.is_terminal:
        logger.info("[Polling] Item %s finished as %s after %s polls", generation_id, generation.status, poll_number)
        return False

    waited = job_poller.waited_seconds(generation)
    if waited >= job_poller.max_wait:
        # The provider may still finish; the item stays resolvable on demand
        await log_task_event(
            db, generation_id, EventType.TIMEOUT,
            external_status=generation.status,
            response_data={"polls": poll_number, "waited_seconds": round(waited, 1)},
        )
        await db.commit()
        logger.warning("[Polling] Stopped polling item %s after %.0fs", generation_id, waited)
        return False

    return True


async def poll_generation_async(user_id: str, generation_id: str, poll_number: int = 1) -> None:
    logger.info("[Polling] Poll #%s for item %s", poll_number, generation_id)

    engine = create_async_engine(settings.DATABASE_URL)
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with session_maker() as db:
            again = await poll_once(db, user_id, generation_id, poll_number)
        await notification_service.tasks.drain()
    finally:
        await engine.dispose()

    if again:
        schedule_next_poll(user_id, generation_id, poll_number)


@dramatiq.actor(max_retries=3, min_backoff=1000, max_backoff=10000)
def poll_generation(user_id: str, generation_id: str, poll_number: int = 1):
    run_async(poll_generation_async(user_id, generation_id, poll_number))
