import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional
from sqlalchemy.ext.asyncio import AsyncSession

from app.adapters import AdapterRegistry, JobState, ProviderError
from app.config import settings
from app.exceptions import PollTimeout, PricingError
from app.models.base import utcnow
from app.models.generation import Generation, GenerationStatus, BillingMode
from app.services.billing import billing_service, LedgerOutcome
from app.services.generations import generation_repository
from app.services.pricing import compute_cost
from app.services.queue import queue_service
from app.services.storage import storage_service
from app.services.task_events import log_poll, log_ledger, log_task_event, EventType

logger = logging.getLogger(__name__)


class JobPoller:
    """Resolves provider jobs and charges post-paid generations on success."""

    def __init__(
        self,
        interval: Optional[float] = None,
        max_interval: Optional[float] = None,
        backoff_factor: Optional[float] = None,
        max_wait: Optional[float] = None,
    ):
        self.interval = interval if interval is not None else settings.POLL_INTERVAL_SECONDS
        self.max_interval = max_interval if max_interval is not None else settings.POLL_MAX_INTERVAL_SECONDS
        self.backoff_factor = backoff_factor if backoff_factor is not None else settings.POLL_BACKOFF_FACTOR
        self.max_wait = max_wait if max_wait is not None else settings.POLL_MAX_WAIT_SECONDS

    def delay_for(self, poll_number: int) -> float:
        """Backoff delay before poll ``poll_number + 1`` (first poll is 1)."""
        delay = self.interval * (self.backoff_factor ** max(poll_number - 1, 0))
        return min(delay, self.max_interval)

    @staticmethod
    def waited_seconds(generation: Generation, now: Optional[datetime] = None) -> float:
        started = generation.started_at or generation.created_at
        if started is None:
            return 0.0
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        return ((now or utcnow()) - started).total_seconds()

    async def charge_postpaid(self, db: AsyncSession, generation: Generation, confirmed_params: Optional[dict] = None) -> LedgerOutcome:
        """Debit a completed post-paid generation, keyed by its id."""
        if generation.billing_mode != BillingMode.POSTPAID or generation.credits_deducted:
            return LedgerOutcome.SKIPPED

        params = dict(generation.payload or {})
        params.update(confirmed_params or (generation.result or {}).get("confirmed_params") or {})
        try:
            quote = compute_cost(generation.model, params)
        except PricingError:
            logger.exception("[Poller] Cannot price item %s (model %s)", generation.id, generation.model)
            return LedgerOutcome.ERROR

        reason = f"queue.postpaid.{generation.provider}.{generation.generation_type}"
        outcome = await billing_service.write_debit_if_absent(
            db, generation.user_id, generation.id, quote.cost, reason,
            meta={"pricing_version": quote.pricing_version, **quote.meta},
        )
        if outcome in (LedgerOutcome.WRITTEN, LedgerOutcome.SKIPPED):
            await generation_repository.mark_credits_deducted(db, generation, credits_cost=quote.cost)
        else:
            logger.error("[Poller] Post-paid debit of %s for item %s failed", quote.cost, generation.id)
        await log_ledger(db, generation.id, EventType.DEBITED, outcome.value, quote.cost, reason)
        await db.commit()
        return outcome

    async def complete(
        self,
        db: AsyncSession,
        generation: Generation,
        outputs: list,
        confirmed_params: Optional[dict] = None,
        raw_response: Optional[dict] = None,
    ) -> Generation:
        urls = await storage_service.rehost_outputs(outputs, f"generations/{generation.user_id}/{generation.id}")
        result = {"outputs": urls, "confirmed_params": confirmed_params or {}}
        if raw_response and raw_response.get("metrics"):
            result["metrics"] = raw_response["metrics"]

        generation = await queue_service.mark_completed(
            db, generation.user_id, generation.id,
            result=result,
            history_id=generation.id,
            result_urls=urls,
            raw_response=raw_response,
        )
        # The record is committed as completed before any charge is attempted
        if generation.status == GenerationStatus.COMPLETED:
            await self.charge_postpaid(db, generation, confirmed_params)
        return generation

    async def resolve(self, db: AsyncSession, user_id: str, generation_id: str, poll_number: int = 0) -> Generation:
        generation = await queue_service.get_item(db, user_id, generation_id)

        if generation.is_terminal:
            # Finish a post-paid charge an earlier resolve could not write
            if generation.status == GenerationStatus.COMPLETED:
                await self.charge_postpaid(db, generation)
            return generation

        if not generation.external_task_id:
            logger.debug("[Poller] Item %s has no provider job yet", generation_id)
            return generation

        adapter = AdapterRegistry.get_adapter(generation.provider)
        if not adapter:
            await queue_service.mark_failed(db, user_id, generation_id, f"Unknown provider {generation.provider}", "UNKNOWN_PROVIDER")
            return generation

        try:
            status = await adapter.get_job_status(generation.external_task_id)
        except ProviderError as e:
            logger.warning("[Poller] Status check for item %s failed: %s", generation_id, e)
            await log_poll(db, generation_id, poll_number, "error", {"error": str(e), "code": e.code})
            await db.commit()
            return generation

        if status.state == JobState.SUCCEEDED:
            if not status.outputs:
                await queue_service.mark_failed(db, user_id, generation_id, "Provider returned no output", "NO_OUTPUT", raw_response=status.raw_response)
                return generation
            return await self.complete(db, generation, status.outputs, status.confirmed_params, status.raw_response)

        if status.state == JobState.FAILED:
            await queue_service.mark_failed(
                db, user_id, generation_id,
                status.error or "Generation failed",
                status.error_code or "PROVIDER_FAILED",
                raw_response=status.raw_response,
            )
            return generation

        if generation.status == GenerationStatus.QUEUED:
            await queue_service.update_status(db, user_id, generation_id, GenerationStatus.PROCESSING)
        await log_poll(db, generation_id, poll_number, status.external_status or "pending", status.raw_response)
        await db.commit()
        return generation

    async def wait_for_completion(
        self,
        db: AsyncSession,
        user_id: str,
        generation_id: str,
        max_wait: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> Generation:
        """Resolve until terminal; raises PollTimeout and leaves the record as is."""
        max_wait = self.max_wait if max_wait is None else max_wait
        started = time.monotonic()
        waited = 0.0
        poll_number = 1

        while True:
            generation = await self.resolve(db, user_id, generation_id, poll_number)
            if generation.is_terminal:
                return generation

            delay = self.delay_for(poll_number)
            if waited + delay > max_wait:
                await log_task_event(
                    db, generation_id, EventType.TIMEOUT,
                    external_status=generation.status,
                    response_data={"polls": poll_number, "waited_seconds": round(waited, 1)},
                )
                await db.commit()
                raise PollTimeout(detail=f"Item {generation_id} still {generation.status} after {waited:.0f}s")

            await sleep(delay)
            waited = max(waited + delay, time.monotonic() - started)
            poll_number += 1


job_poller = JobPoller()
