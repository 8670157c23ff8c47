import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.config import settings
from app.services.notifications import BackgroundTaskQueue, NotificationService, post_to_webhook


@pytest.mark.asyncio
async def test_running_task_is_not_scheduled_twice():
    queue = BackgroundTaskQueue(max_concurrent=2)
    release = asyncio.Event()
    calls = []

    async def job():
        calls.append(1)
        await release.wait()

    assert queue.submit("gen-1", job) is True
    assert queue.submit("gen-1", job) is False
    release.set()
    await queue.drain()

    assert calls == [1]
    assert queue.pending == 0


@pytest.mark.asyncio
async def test_concurrency_is_bounded():
    queue = BackgroundTaskQueue(max_concurrent=2)
    running = 0
    peak = 0

    async def job():
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1

    for i in range(6):
        queue.submit(f"gen-{i}", job)
    await queue.drain()

    assert peak == 2


@pytest.mark.asyncio
async def test_failing_task_is_contained(caplog):
    queue = BackgroundTaskQueue()

    async def boom():
        raise RuntimeError("downstream unavailable")

    queue.submit("gen-1", boom)
    await queue.drain()

    assert "Task gen-1 failed" in caplog.text


@pytest.mark.asyncio
async def test_notify_completed_calls_subscribers_with_payload():
    service = NotificationService(max_concurrent=1)
    subscriber = AsyncMock()
    service.unsubscribe(post_to_webhook)
    service.subscribe(subscriber)
    generation = SimpleNamespace(
        id="gen-1", user_id="user-1", generation_type="image", provider="replicate", model="m",
        history_id="gen-1", result_url="https://cdn/x.png", result_urls=["https://cdn/x.png"], credits_cost=20,
    )

    service.notify_completed(generation)
    await service.tasks.drain()

    payload = subscriber.await_args.args[0]
    assert payload["event"] == "generation.completed"
    assert payload["queue_id"] == "gen-1"
    assert payload["result_urls"] == ["https://cdn/x.png"]


@pytest.mark.asyncio
async def test_webhook_posts_payload():
    seen = []
    real_client = httpx.AsyncClient

    def handler(request):
        seen.append(request)
        return httpx.Response(204)

    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    with patch.object(settings, "COMPLETION_WEBHOOK_URL", "https://hooks.example.com/done"), \
         patch("httpx.AsyncClient", side_effect=factory):
        await post_to_webhook({"queue_id": "gen-1"})

    assert str(seen[0].url) == "https://hooks.example.com/done"


@pytest.mark.asyncio
async def test_webhook_is_skipped_without_url():
    with patch.object(settings, "COMPLETION_WEBHOOK_URL", None), \
         patch("httpx.AsyncClient") as client:
        await post_to_webhook({"queue_id": "gen-1"})

    client.assert_not_called()
