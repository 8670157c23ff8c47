import logging
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy import select, delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value
from app.models.base import utcnow
from app.models.generation import Generation, GenerationStatus, BillingMode
from app.models.task_event import TaskEvent

logger = logging.getLogger(__name__)

# Fields a status update may carry alongside the status itself
UPDATABLE_FIELDS = (
    "error_code",
    "error_message",
    "result",
    "result_url",
    "result_urls",
    "history_id",
    "external_task_id",
    "started_at",
    "completed_at",
    "extra_data",
)


class GenerationRepository:
    """Per-user store of generation records.

    Writes that change ``status`` go through :meth:`apply_update`, which
    refuses to move a record out of a terminal state at the storage layer.
    """

    @staticmethod
    async def create(
        db: AsyncSession,
        user_id: str,
        generation_type: str,
        provider: str,
        payload: Optional[dict],
        credits_cost: int,
        queue_position: int,
        model: Optional[str] = None,
        billing_mode: str = BillingMode.PREPAID,
        extra_data: Optional[dict] = None,
    ) -> Generation:
        generation = Generation(
            user_id=user_id,
            status=GenerationStatus.QUEUED,
            generation_type=generation_type,
            provider=provider,
            model=model,
            payload=payload,
            extra_data=extra_data or {},
            billing_mode=billing_mode,
            credits_cost=credits_cost,
            credits_deducted=False,
            queue_position=queue_position,
        )
        db.add(generation)
        await db.flush()
        logger.info("[Queue] Created item %s for user %s (%s/%s)", generation.id, user_id, provider, generation_type)
        return generation

    @staticmethod
    async def get(db: AsyncSession, user_id: str, generation_id: str) -> Optional[Generation]:
        result = await db.execute(
            select(Generation).where(
                Generation.id == generation_id,
                Generation.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def list_for_user(
        db: AsyncSession,
        user_id: str,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[Generation]:
        query = select(Generation).where(Generation.user_id == user_id)
        if status:
            query = query.where(Generation.status == status)
        query = query.order_by(Generation.created_at.asc()).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def count_queued(db: AsyncSession, user_id: str) -> int:
        result = await db.execute(
            select(func.count(Generation.id)).where(
                Generation.user_id == user_id,
                Generation.status == GenerationStatus.QUEUED,
            )
        )
        return int(result.scalar() or 0)

    @staticmethod
    async def apply_update(
        db: AsyncSession,
        generation: Generation,
        status: Optional[str] = None,
        **updates,
    ) -> bool:
        """Conditionally write ``status`` and ``updates`` to a non-terminal record.

        Returns False (and writes nothing) when the stored row is already
        terminal, so a concurrent finisher cannot be overwritten.
        """
        values = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS and v is not None}
        if status is not None:
            values["status"] = status
            if status in GenerationStatus.TERMINAL and "completed_at" not in values:
                values["completed_at"] = utcnow()
        if not values:
            return True

        result = await db.execute(
            update(Generation)
            .where(
                Generation.id == generation.id,
                Generation.status.in_(GenerationStatus.ACTIVE),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(
                "[Queue] Ignored update of item %s to %s: record is already terminal",
                generation.id, status,
            )
            await db.refresh(generation)
            return False

        for key, value in values.items():
            set_committed_value(generation, key, value)
        return True

    @staticmethod
    async def mark_credits_deducted(
        db: AsyncSession,
        generation: Generation,
        credits_cost: Optional[int] = None,
        only_active: bool = False,
    ) -> bool:
        """Flag the record as charged.

        With ``only_active`` the flag is written only while the record is still
        queued or processing; False means it went terminal in the meantime.
        """
        values = {"credits_deducted": True}
        if credits_cost is not None:
            values["credits_cost"] = credits_cost

        stmt = update(Generation).where(Generation.id == generation.id)
        if only_active:
            stmt = stmt.where(Generation.status.in_(GenerationStatus.ACTIVE))
        result = await db.execute(stmt.values(**values).execution_options(synchronize_session=False))
        if result.rowcount == 0:
            await db.refresh(generation)
            return False

        for key, value in values.items():
            set_committed_value(generation, key, value)
        return True

    @staticmethod
    async def delete(db: AsyncSession, generation: Generation) -> None:
        await db.delete(generation)
        await db.flush()
        logger.info("[Queue] Deleted item %s", generation.id)

    @staticmethod
    async def cleanup_terminal_older_than(
        db: AsyncSession,
        hours: int,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        cutoff = (now or utcnow()) - timedelta(hours=hours)
        query = select(Generation.id).where(
            Generation.status.in_(GenerationStatus.TERMINAL),
            Generation.completed_at < cutoff,
        )
        if user_id:
            query = query.where(Generation.user_id == user_id)
        ids = list((await db.execute(query)).scalars().all())
        if not ids:
            return 0

        await db.execute(
            delete(TaskEvent)
            .where(TaskEvent.generation_id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(
            delete(Generation)
            .where(Generation.id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        count = result.rowcount or 0
        if count:
            logger.info("[Queue] Cleaned up %s old items (user=%s)", count, user_id or "*")
        return count


generation_repository = GenerationRepository()
