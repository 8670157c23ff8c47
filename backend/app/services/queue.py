import logging
from dataclasses import dataclass, field
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import InsufficientCredits, LedgerWriteFailed, RecordNotFound, InvalidStateTransition
from app.models.base import utcnow
from app.models.generation import Generation, GenerationStatus, BillingMode
from app.services.billing import billing_service, LedgerOutcome
from app.services.generations import generation_repository
from app.services.notifications import notification_service
from app.services.pricing import compute_cost
from app.services.task_events import log_created, log_ledger, log_task_event, log_failed, log_completed, EventType

logger = logging.getLogger(__name__)


@dataclass
class AdmitRequest:
    generation_type: str
    provider: str
    credits_cost: int
    model: Optional[str] = None
    payload: Optional[dict] = None
    metadata: dict = field(default_factory=dict)
    billing_mode: str = BillingMode.PREPAID


@dataclass
class AdmitResult:
    queue_id: str
    queue_position: int
    credits_cost: int


def _ledger_reason(prefix: str, generation: Generation) -> str:
    return f"{prefix}.{generation.provider}.{generation.generation_type}"


class QueueService:
    """Owns generation records and decides when credits move."""

    @staticmethod
    async def admit(db: AsyncSession, user_id: str, request: AdmitRequest) -> AdmitResult:
        await billing_service.ensure_user(db, user_id)

        postpaid = request.billing_mode == BillingMode.POSTPAID
        metadata = dict(request.metadata or {})
        if postpaid:
            # Nothing is charged yet, but the user must be able to cover the estimate
            cost = 0
            required = compute_cost(request.model, request.payload).cost
            metadata["estimated_cost"] = required
        else:
            cost = required = max(int(request.credits_cost), 0)

        balance = await billing_service.read_balance(db, user_id)
        if balance < required:
            raise InsufficientCredits(required=required, available=balance)

        position = await generation_repository.count_queued(db, user_id) + 1
        generation = await generation_repository.create(
            db,
            user_id=user_id,
            generation_type=request.generation_type,
            provider=request.provider,
            model=request.model,
            payload=request.payload,
            credits_cost=cost,
            queue_position=position,
            billing_mode=request.billing_mode,
            extra_data=metadata,
        )
        await log_created(db, generation.id, request.provider, request.generation_type, cost)
        await db.commit()

        if postpaid:
            return AdmitResult(queue_id=generation.id, queue_position=position, credits_cost=0)

        reason = _ledger_reason("queue", generation)
        outcome = await billing_service.write_debit_if_absent(
            db, user_id, generation.id, cost, reason,
            meta={"generation_type": request.generation_type, "model": request.model},
        )

        if outcome == LedgerOutcome.ERROR:
            await generation_repository.delete(db, generation)
            await db.commit()
            logger.error("[Queue] Debit failed for item %s, record removed", generation.id)
            raise LedgerWriteFailed()

        marked = await generation_repository.mark_credits_deducted(db, generation, only_active=True)
        await log_ledger(db, generation.id, EventType.DEBITED, outcome.value, cost, reason)
        await db.commit()

        if not marked:
            # Cancelled or failed between the record commit and the debit
            await generation_repository.mark_credits_deducted(db, generation)
            await db.commit()
            prefix = "queue.cancel" if generation.status == GenerationStatus.CANCELLED else "queue.failed"
            refund = await QueueService._refund_if_charged(db, generation, prefix)
            logger.warning(
                "[Queue] Item %s went %s while being charged (refund %s)",
                generation.id, generation.status, refund.value,
            )
            return AdmitResult(queue_id=generation.id, queue_position=position, credits_cost=cost)

        logger.info("[Queue] Admitted item %s for user %s at position %s (cost %s)", generation.id, user_id, position, cost)
        return AdmitResult(queue_id=generation.id, queue_position=position, credits_cost=cost)

    @staticmethod
    async def get_item(db: AsyncSession, user_id: str, queue_id: str) -> Generation:
        generation = await generation_repository.get(db, user_id, queue_id)
        if not generation:
            raise RecordNotFound()
        return generation

    @staticmethod
    async def list_items(db: AsyncSession, user_id: str, status: Optional[str] = None, limit: int = 100) -> list[Generation]:
        return await generation_repository.list_for_user(db, user_id, status=status, limit=limit)

    @staticmethod
    async def _refund_if_charged(db: AsyncSession, generation: Generation, prefix: str) -> LedgerOutcome:
        if not generation.credits_deducted or generation.credits_cost <= 0:
            return LedgerOutcome.SKIPPED

        reason = _ledger_reason(prefix, generation)
        outcome = await billing_service.issue_refund(
            db, generation.user_id, generation.id, generation.credits_cost, reason,
            meta={"status": generation.status},
        )
        await log_ledger(db, generation.id, EventType.REFUNDED, outcome.value, generation.credits_cost, reason)
        await db.commit()
        return outcome

    @staticmethod
    async def cancel(db: AsyncSession, user_id: str, queue_id: str) -> dict:
        generation = await QueueService.get_item(db, user_id, queue_id)
        if generation.is_terminal:
            raise InvalidStateTransition(generation.status, GenerationStatus.CANCELLED)

        applied = await generation_repository.apply_update(db, generation, status=GenerationStatus.CANCELLED)
        if not applied:
            # A finisher won the race between the read and the guarded write
            await db.commit()
            raise InvalidStateTransition(generation.status, GenerationStatus.CANCELLED)

        await log_task_event(db, generation.id, EventType.CANCELLED, external_status=GenerationStatus.CANCELLED)
        # An admission still charging may have marked the debit after our read
        await db.refresh(generation, ["credits_deducted"])
        await db.commit()

        outcome = await QueueService._refund_if_charged(db, generation, "queue.cancel")
        logger.info("[Queue] Cancelled item %s for user %s (refund %s)", queue_id, user_id, outcome.value)
        return {"refunded": outcome == LedgerOutcome.WRITTEN}

    @staticmethod
    async def mark_failed(
        db: AsyncSession,
        user_id: str,
        queue_id: str,
        error_text: str,
        error_code: Optional[str] = None,
        raw_response: Optional[dict] = None,
    ) -> bool:
        """Move an item to ``failed`` and refund it. Never raises."""
        try:
            generation = await generation_repository.get(db, user_id, queue_id)
            if not generation:
                logger.warning("[Queue] mark_failed: item %s not found for user %s", queue_id, user_id)
                return False

            applied = await generation_repository.apply_update(
                db, generation,
                status=GenerationStatus.FAILED,
                error_code=error_code or "GENERATION_FAILED",
                error_message=error_text,
            )
            if not applied:
                await db.commit()
                return False

            await log_failed(db, generation.id, error_code or "GENERATION_FAILED", error_text, raw_response)
            await db.refresh(generation, ["credits_deducted"])
            await db.commit()
            await QueueService._refund_if_charged(db, generation, "queue.failed")
            logger.info("[Queue] Item %s failed: %s", queue_id, error_text)
            return True
        except Exception:
            logger.exception("[Queue] Could not mark item %s as failed", queue_id)
            try:
                await db.rollback()
            except Exception:
                logger.exception("[Queue] Rollback after mark_failed error also failed")
            return False

    @staticmethod
    async def mark_completed(
        db: AsyncSession,
        user_id: str,
        queue_id: str,
        result: Optional[dict] = None,
        history_id: Optional[str] = None,
        result_urls: Optional[list] = None,
        raw_response: Optional[dict] = None,
    ) -> Generation:
        generation = await QueueService.get_item(db, user_id, queue_id)
        if generation.is_terminal:
            logger.warning("[Queue] Ignored completion of item %s in status %s", queue_id, generation.status)
            return generation

        applied = await generation_repository.apply_update(
            db, generation,
            status=GenerationStatus.COMPLETED,
            result=result,
            history_id=history_id,
            result_urls=result_urls,
            result_url=result_urls[0] if result_urls else None,
        )
        if not applied:
            await db.commit()
            return generation

        await log_completed(db, generation.id, result_urls, raw_response)
        await db.commit()
        logger.info("[Queue] Item %s completed", queue_id)

        notification_service.notify_completed(generation)
        return generation

    @staticmethod
    async def update_status(db: AsyncSession, user_id: str, queue_id: str, status: str, **updates) -> Generation:
        if status not in GenerationStatus.ALL:
            raise ValueError(f"Unknown status: {status}")

        generation = await QueueService.get_item(db, user_id, queue_id)
        if generation.is_terminal:
            raise InvalidStateTransition(generation.status, status)

        if status == GenerationStatus.PROCESSING and not generation.started_at:
            updates.setdefault("started_at", utcnow())

        previous = generation.status
        applied = await generation_repository.apply_update(db, generation, status=status, **updates)
        if not applied:
            await db.commit()
            raise InvalidStateTransition(generation.status, status)

        if previous != status:
            await log_task_event(
                db, generation.id, EventType.STATUS_CHANGE,
                external_status=status,
                response_data={"from": previous, "to": status},
            )
        await db.commit()
        return generation

    @staticmethod
    async def cleanup_old_items(db: AsyncSession, user_id: Optional[str] = None) -> int:
        return await generation_repository.cleanup_terminal_older_than(
            db, settings.QUEUE_RETENTION_HOURS, user_id=user_id,
        )


queue_service = QueueService()
