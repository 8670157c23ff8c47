import asyncio
import logging
from typing import Awaitable, Callable, Optional
from sqlalchemy.ext.asyncio import AsyncSession

from app.adapters import AdapterRegistry, BaseAdapter, SubmitResult, ProviderError
from app.config import settings
from app.exceptions import ProviderCallFailed
from app.models.generation import Generation, GenerationStatus
from app.services.poller import job_poller
from app.services.queue import queue_service
from app.services.task_events import log_sent_to_provider

logger = logging.getLogger(__name__)


class GenerationService:
    """Sends admitted queue items to their provider."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.timeout = timeout if timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.PROVIDER_MAX_ATTEMPTS)
        self.backoff = backoff if backoff is not None else settings.PROVIDER_RETRY_BACKOFF_SECONDS
        self.sleep = sleep

    async def _submit_with_retries(self, adapter: BaseAdapter, generation: Generation) -> SubmitResult:
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await asyncio.wait_for(
                    adapter.submit(generation.model, generation.payload or {}),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                last_error = ProviderError(f"Provider call exceeded {self.timeout:.0f}s", code="TIMEOUT")
            except ProviderError as e:
                last_error = e
                if not e.retryable:
                    break

            logger.warning(
                "[Generation] Attempt %s/%s for item %s failed: %s",
                attempt, self.max_attempts, generation.id, last_error,
            )
            if attempt < self.max_attempts:
                await self.sleep(self.backoff * attempt)

        raise last_error

    @staticmethod
    def enqueue_poll(user_id: str, generation_id: str) -> None:
        from app.workers.polling import poll_generation

        poll_generation.send_with_options(
            args=(user_id, generation_id, 1),
            delay=int(job_poller.delay_for(1) * 1000),
        )

    async def run(self, db: AsyncSession, user_id: str, queue_id: str, enqueue_poll: bool = True) -> Generation:
        generation = await queue_service.get_item(db, user_id, queue_id)
        if generation.is_terminal:
            return generation

        adapter = AdapterRegistry.get_adapter(generation.provider)
        if not adapter:
            await queue_service.mark_failed(db, user_id, queue_id, f"Unknown provider {generation.provider}", "UNKNOWN_PROVIDER")
            raise ProviderCallFailed(detail=f"Unknown provider {generation.provider}")

        await queue_service.update_status(db, user_id, queue_id, GenerationStatus.PROCESSING)

        try:
            submitted = await self._submit_with_retries(adapter, generation)
        except ProviderError as e:
            raw = e.raw_response if isinstance(e.raw_response, dict) else None
            await queue_service.mark_failed(db, user_id, queue_id, str(e), e.code, raw_response=raw)
            raise ProviderCallFailed(detail=f"{e.code}: {e}")
        except Exception as e:
            logger.exception("[Generation] Unexpected error submitting item %s", queue_id)
            await queue_service.mark_failed(db, user_id, queue_id, f"Unexpected provider error: {e}", "PROVIDER_ERROR")
            raise ProviderCallFailed(detail=f"PROVIDER_ERROR: {e}")

        await log_sent_to_provider(db, queue_id, submitted.job_handle, generation.provider, submitted.raw_response)
        await db.commit()

        if submitted.is_immediate:
            if not submitted.outputs:
                await queue_service.mark_failed(
                    db, user_id, queue_id, "Provider returned no output", "NO_OUTPUT",
                    raw_response=submitted.raw_response,
                )
                raise ProviderCallFailed(detail="NO_OUTPUT")
            try:
                return await job_poller.complete(
                    db, generation, submitted.outputs, submitted.confirmed_params, submitted.raw_response,
                )
            except Exception as e:
                logger.exception("[Generation] Completing item %s failed", queue_id)
                await db.rollback()
                # False when the item had already reached a terminal state
                if not await queue_service.mark_failed(db, user_id, queue_id, f"Completion failed: {e}", "COMPLETION_FAILED"):
                    raise
                raise ProviderCallFailed(detail=f"COMPLETION_FAILED: {e}")

        await queue_service.update_status(
            db, user_id, queue_id, GenerationStatus.PROCESSING,
            external_task_id=submitted.job_handle,
        )
        if enqueue_poll:
            try:
                self.enqueue_poll(user_id, queue_id)
            except Exception:
                # The item stays pollable through the resolve endpoint
                logger.exception("[Generation] Could not enqueue polling for item %s", queue_id)
        logger.info("[Generation] Item %s submitted as job %s", queue_id, submitted.job_handle)
        return generation


generation_service = GenerationService()
