from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.models.task_event import TaskEvent


class EventType:
    CREATED = "created"
    SENT_TO_PROVIDER = "sent_to_provider"
    POLL = "poll"
    STATUS_CHANGE = "status_change"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    DEBITED = "debited"
    REFUNDED = "refunded"


def _data(**fields) -> dict:
    return {k: v for k, v in fields.items() if v is not None}


async def log_task_event(
    db: AsyncSession,
    generation_id: str,
    event_type: str,
    external_status: Optional[str] = None,
    response_data: Optional[dict] = None,
    error_message: Optional[str] = None,
) -> TaskEvent:
    """Append an audit event. Flushed only; the caller's commit persists it."""
    event = TaskEvent(
        generation_id=generation_id,
        event_type=event_type,
        external_status=external_status,
        response_data=response_data or None,
        error_message=error_message,
    )
    db.add(event)
    await db.flush()
    return event


async def get_task_events(db: AsyncSession, generation_id: str) -> list[TaskEvent]:
    result = await db.execute(
        select(TaskEvent)
        .where(TaskEvent.generation_id == generation_id)
        .order_by(TaskEvent.created_at.asc())
    )
    return list(result.scalars().all())


async def log_created(db: AsyncSession, generation_id: str, provider: str, generation_type: str, credits_cost: int) -> TaskEvent:
    return await log_task_event(
        db, generation_id, EventType.CREATED,
        response_data=_data(provider=provider, generation_type=generation_type, credits_cost=credits_cost),
    )


async def log_sent_to_provider(db: AsyncSession, generation_id: str, job_handle: Optional[str], provider: str, raw: Optional[dict] = None) -> TaskEvent:
    # No job handle means the provider answered with the outputs directly
    return await log_task_event(
        db, generation_id, EventType.SENT_TO_PROVIDER,
        external_status="submitted" if job_handle else "immediate",
        response_data=_data(job_handle=job_handle, provider=provider, raw=raw),
    )


async def log_poll(db: AsyncSession, generation_id: str, poll_number: int, external_status: str, raw: Optional[dict] = None) -> TaskEvent:
    return await log_task_event(
        db, generation_id, EventType.POLL,
        external_status=external_status,
        response_data=_data(poll_number=poll_number, raw=raw),
    )


async def log_completed(db: AsyncSession, generation_id: str, result_urls: Optional[list], raw: Optional[dict] = None) -> TaskEvent:
    return await log_task_event(
        db, generation_id, EventType.COMPLETED,
        external_status="succeeded",
        response_data=_data(result_urls=result_urls or [], raw=raw),
    )


async def log_failed(db: AsyncSession, generation_id: str, error_code: str, error_message: str, raw: Optional[dict] = None) -> TaskEvent:
    return await log_task_event(
        db, generation_id, EventType.FAILED,
        external_status="failed",
        error_message=error_message,
        response_data=_data(error_code=error_code, raw=raw),
    )


async def log_ledger(db: AsyncSession, generation_id: str, event_type: str, outcome: str, amount: int, reason: str) -> TaskEvent:
    """Record a debit or refund attempt; ``external_status`` holds the ledger outcome."""
    return await log_task_event(
        db, generation_id, event_type,
        external_status=outcome,
        response_data=_data(amount=amount, reason=reason),
    )
