import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

from app.config import settings
from app.models.generation import Generation

logger = logging.getLogger(__name__)

Subscriber = Callable[[dict], Awaitable[None]]


class BackgroundTaskQueue:
    """Runs fire-and-forget coroutines with bounded concurrency.

    A task id that is already running is not scheduled twice. Failures are
    logged and never reach the caller.
    """

    def __init__(self, max_concurrent: int = 3):
        self.max_concurrent = max(1, max_concurrent)
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._running: dict[str, asyncio.Task] = {}

    @property
    def semaphore(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)
        return self._semaphore

    def submit(self, task_id: str, factory: Callable[[], Awaitable[None]]) -> bool:
        if task_id in self._running:
            logger.debug("[Notify] Task %s already scheduled", task_id)
            return False

        task = asyncio.create_task(self._run(task_id, factory))
        self._running[task_id] = task
        task.add_done_callback(lambda _: self._running.pop(task_id, None))
        return True

    async def _run(self, task_id: str, factory: Callable[[], Awaitable[None]]) -> None:
        async with self.semaphore:
            try:
                await factory()
            except Exception:
                logger.exception("[Notify] Task %s failed", task_id)

    async def drain(self) -> None:
        tasks = list(self._running.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        # Worker actors run each message on a fresh event loop
        self._semaphore = None

    @property
    def pending(self) -> int:
        return len(self._running)


async def post_to_webhook(payload: dict) -> None:
    if not settings.COMPLETION_WEBHOOK_URL:
        return
    async with httpx.AsyncClient(timeout=15.0) as client:
        response = await client.post(settings.COMPLETION_WEBHOOK_URL, json=payload)
        response.raise_for_status()
    logger.info("[Notify] Delivered completion of %s", payload.get("queue_id"))


class NotificationService:
    def __init__(self, max_concurrent: int = 3):
        self.tasks = BackgroundTaskQueue(max_concurrent)
        self._subscribers: list[Subscriber] = [post_to_webhook]

    def subscribe(self, subscriber: Subscriber) -> None:
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    @staticmethod
    def build_payload(generation: Generation) -> dict:
        return {
            "event": "generation.completed",
            "queue_id": generation.id,
            "user_id": generation.user_id,
            "generation_type": generation.generation_type,
            "provider": generation.provider,
            "model": generation.model,
            "history_id": generation.history_id,
            "result_url": generation.result_url,
            "result_urls": generation.result_urls or [],
            "credits_cost": generation.credits_cost,
        }

    def notify_completed(self, generation: Generation) -> None:
        payload = self.build_payload(generation)
        for index, subscriber in enumerate(list(self._subscribers)):
            self.tasks.submit(f"{generation.id}:{index}", lambda s=subscriber: s(payload))


notification_service = NotificationService(settings.NOTIFY_MAX_CONCURRENT)
