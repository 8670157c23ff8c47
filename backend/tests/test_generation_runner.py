import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.adapters import AdapterRegistry, BaseAdapter, ProviderError, ReplicateAdapter, SubmitResult
from app.exceptions import ProviderCallFailed
from app.models.generation import GenerationStatus
from app.services.generation import GenerationService
from app.services.poller import job_poller
from app.services.queue import queue_service, AdmitRequest
from app.services.storage import storage_service
from app.services.task_events import get_task_events, EventType


class ScriptedAdapter(BaseAdapter):
    name = "scripted"
    display_name = "Scripted"

    def __init__(self, *responses):
        super().__init__("test-key")
        self.responses = list(responses)
        self.calls = 0

    async def submit(self, model, input_data):
        self.calls += 1
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        if response == "hang":
            await asyncio.sleep(5)
        return response

    async def get_job_status(self, job_handle):
        raise NotImplementedError


@pytest.fixture(autouse=True)
def rehost_in_place():
    with patch.object(storage_service, "rehost_outputs", AsyncMock(side_effect=lambda outputs, prefix: list(outputs))):
        yield


@pytest.fixture(autouse=True)
def quiet_notifications():
    with patch("app.services.queue.notification_service"):
        yield


async def admit(db, cost=100) -> str:
    result = await queue_service.admit(db, "user-1", AdmitRequest(
        generation_type="image",
        provider="scripted",
        model="black-forest-labs/flux-dev",
        payload={"prompt": "a red fox"},
        credits_cost=cost,
    ))
    return result.queue_id


def runner(**kwargs) -> GenerationService:
    options = {"timeout": 1, "max_attempts": 3, "backoff": 2, "sleep": AsyncMock()}
    options.update(kwargs)
    return GenerationService(**options)


@pytest.mark.asyncio
async def test_immediate_result_completes_item(db, user_factory, balance_of):
    await user_factory(balance=500)
    queue_id = await admit(db)
    adapter = ScriptedAdapter(SubmitResult(outputs=["https://provider.example.com/fox.png"]))

    with patch.object(AdapterRegistry, "get_adapter", return_value=adapter):
        item = await runner().run(db, "user-1", queue_id)

    assert item.status == GenerationStatus.COMPLETED
    assert item.result_urls == ["https://provider.example.com/fox.png"]
    assert item.started_at is not None
    assert await balance_of() == 400


@pytest.mark.asyncio
async def test_job_handle_moves_item_to_processing(db, user_factory):
    await user_factory(balance=500)
    queue_id = await admit(db)
    adapter = ScriptedAdapter(SubmitResult(job_handle="pred-123"))

    with patch.object(AdapterRegistry, "get_adapter", return_value=adapter), \
         patch.object(GenerationService, "enqueue_poll") as enqueue:
        item = await runner().run(db, "user-1", queue_id)

    assert item.status == GenerationStatus.PROCESSING
    assert item.external_task_id == "pred-123"
    enqueue.assert_called_once_with("user-1", queue_id)


@pytest.mark.asyncio
async def test_retries_are_bounded_then_item_fails_and_is_refunded(db, user_factory, balance_of):
    await user_factory(balance=500)
    queue_id = await admit(db)
    adapter = ScriptedAdapter(ProviderError("upstream 503", code="HTTP_503"))
    service = runner()

    with patch.object(AdapterRegistry, "get_adapter", return_value=adapter):
        with pytest.raises(ProviderCallFailed) as exc_info:
            await service.run(db, "user-1", queue_id)

    assert adapter.calls == 3
    assert [c.args[0] for c in service.sleep.await_args_list] == [2, 4]
    assert exc_info.value.message == "Generation failed, please try again"
    assert "upstream 503" in exc_info.value.detail

    item = await queue_service.get_item(db, "user-1", queue_id)
    assert item.status == GenerationStatus.FAILED
    assert item.error_code == "HTTP_503"
    assert await balance_of() == 500


@pytest.mark.asyncio
async def test_non_retryable_error_fails_on_first_attempt(db, user_factory, balance_of):
    await user_factory(balance=500)
    queue_id = await admit(db)
    adapter = ScriptedAdapter(ProviderError("bad input", code="HTTP_422", retryable=False))

    with patch.object(AdapterRegistry, "get_adapter", return_value=adapter):
        with pytest.raises(ProviderCallFailed):
            await runner().run(db, "user-1", queue_id)

    assert adapter.calls == 1
    assert await balance_of() == 500


@pytest.mark.asyncio
async def test_timeout_counts_as_provider_failure(db, user_factory, balance_of):
    await user_factory(balance=500)
    queue_id = await admit(db)
    adapter = ScriptedAdapter("hang")

    with patch.object(AdapterRegistry, "get_adapter", return_value=adapter):
        with pytest.raises(ProviderCallFailed):
            await runner(timeout=0.05, max_attempts=1).run(db, "user-1", queue_id)

    item = await queue_service.get_item(db, "user-1", queue_id)
    assert item.status == GenerationStatus.FAILED
    assert item.error_code == "TIMEOUT"
    assert await balance_of() == 500


@pytest.mark.asyncio
async def test_unknown_provider_fails_item(db, user_factory, balance_of):
    await user_factory(balance=500)
    queue_id = await admit(db)

    with patch.object(AdapterRegistry, "get_adapter", return_value=None):
        with pytest.raises(ProviderCallFailed):
            await runner().run(db, "user-1", queue_id)

    item = await queue_service.get_item(db, "user-1", queue_id)
    assert item.status == GenerationStatus.FAILED
    assert await balance_of() == 500


@pytest.mark.asyncio
async def test_non_object_provider_body_fails_and_refunds(db, user_factory, balance_of):
    await user_factory(balance=500)
    queue_id = await admit(db)
    real_client = httpx.AsyncClient

    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(lambda request: httpx.Response(201, json=["not", "an", "object"]))
        return real_client(*args, **kwargs)

    with patch.object(AdapterRegistry, "get_adapter", return_value=ReplicateAdapter("r8-key")), \
         patch("httpx.AsyncClient", side_effect=factory):
        with pytest.raises(ProviderCallFailed):
            await runner(max_attempts=1).run(db, "user-1", queue_id)

    item = await queue_service.get_item(db, "user-1", queue_id)
    assert item.status == GenerationStatus.FAILED
    assert item.error_code == "MALFORMED_RESPONSE"
    assert await balance_of() == 500


@pytest.mark.asyncio
async def test_unexpected_adapter_error_fails_and_refunds(db, user_factory, balance_of):
    await user_factory(balance=500)
    queue_id = await admit(db)
    adapter = ScriptedAdapter(KeyError("output"))

    with patch.object(AdapterRegistry, "get_adapter", return_value=adapter):
        with pytest.raises(ProviderCallFailed):
            await runner().run(db, "user-1", queue_id)

    assert adapter.calls == 1
    item = await queue_service.get_item(db, "user-1", queue_id)
    assert item.status == GenerationStatus.FAILED
    assert item.error_code == "PROVIDER_ERROR"
    assert await balance_of() == 500


@pytest.mark.asyncio
async def test_completion_error_fails_and_refunds(db, user_factory, balance_of):
    await user_factory(balance=500)
    queue_id = await admit(db)
    adapter = ScriptedAdapter(SubmitResult(outputs=["https://provider.example.com/fox.png"]))

    with patch.object(AdapterRegistry, "get_adapter", return_value=adapter), \
         patch.object(job_poller, "complete", AsyncMock(side_effect=RuntimeError("bucket unreachable"))):
        with pytest.raises(ProviderCallFailed) as exc_info:
            await runner().run(db, "user-1", queue_id)

    assert "COMPLETION_FAILED" in exc_info.value.detail
    item = await queue_service.get_item(db, "user-1", queue_id)
    assert item.status == GenerationStatus.FAILED
    assert item.error_code == "COMPLETION_FAILED"
    assert await balance_of() == 500


@pytest.mark.asyncio
async def test_provider_error_body_is_kept_with_the_failure(db, user_factory):
    await user_factory(balance=500)
    queue_id = await admit(db)
    error = ProviderError("bad input", code="HTTP_422", retryable=False, raw_response={"detail": "prompt too long"})

    with patch.object(AdapterRegistry, "get_adapter", return_value=ScriptedAdapter(error)):
        with pytest.raises(ProviderCallFailed):
            await runner().run(db, "user-1", queue_id)

    failed = [e for e in await get_task_events(db, queue_id) if e.event_type == EventType.FAILED]
    assert failed[0].response_data == {"error_code": "HTTP_422", "raw": {"detail": "prompt too long"}}
    assert failed[0].error_message == "bad input"
