from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from app.config import settings
from app.database import get_db
from app.main import app
from app.services.auth import auth_service


@pytest_asyncio.fixture
async def api_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    with patch.object(settings, "DEFAULT_STARTING_CREDITS", 500), \
         patch("app.services.queue.notification_service"):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client

    app.dependency_overrides.pop(get_db, None)


def auth(user_id: str = "user-1") -> dict:
    return {"Authorization": f"Bearer {auth_service.create_access_token(user_id)}"}


IMAGE_REQUEST = {
    "generation_type": "image",
    "provider": "replicate",
    "model": "black-forest-labs/flux-schnell",
    "payload": {"prompt": "a paper boat", "num_images": 2},
}


@pytest.mark.asyncio
async def test_health(api_client):
    response = await api_client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_requests_without_token_are_rejected(api_client):
    assert (await api_client.get("/api/v1/credits")).status_code == 401
    bad = await api_client.get("/api/v1/credits", headers={"Authorization": "Bearer not-a-jwt"})
    assert bad.status_code == 401


@pytest.mark.asyncio
async def test_first_request_initializes_credits(api_client):
    response = await api_client.get("/api/v1/credits", headers=auth())

    assert response.status_code == 200
    data = response.json()
    assert data["balance"] == 500
    assert data["entries"][0]["direction"] == "grant"
    assert data["entries"][0]["idempotency_key"] == "init:user-1"


@pytest.mark.asyncio
async def test_admit_charges_quoted_cost(api_client):
    response = await api_client.post("/api/v1/queue", json=IMAGE_REQUEST, headers=auth())

    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["queue_position"] == 1
    assert data["credits_cost"] == 20
    assert data["status"] == "queued"

    credits = (await api_client.get("/api/v1/credits", headers=auth())).json()
    assert credits["balance"] == 480

    item = (await api_client.get(f"/api/v1/queue/{data['queue_id']}", headers=auth())).json()["item"]
    assert item["status"] == "queued"
    assert item["credits_deducted"] is True


@pytest.mark.asyncio
async def test_admit_without_enough_credits_returns_402(api_client):
    body = {**IMAGE_REQUEST, "model": "stability-ai/stable-diffusion-3.5-large", "payload": {"num_images": 8}}

    response = await api_client.post("/api/v1/queue", json=body, headers=auth())

    assert response.status_code == 402
    assert response.json() == {
        "ok": False,
        "code": "INSUFFICIENT_CREDITS",
        "error": "Insufficient credits. Required: 1040, available: 500",
    }
    listing = (await api_client.get("/api/v1/queue", headers=auth())).json()
    assert listing["total"] == 0


@pytest.mark.asyncio
async def test_unknown_model_returns_400(api_client):
    body = {**IMAGE_REQUEST, "model": "someone/made-up"}

    response = await api_client.post("/api/v1/queue", json=body, headers=auth())

    assert response.status_code == 400
    assert response.json()["code"] == "PRICING_ERROR"


@pytest.mark.asyncio
async def test_cancel_refunds_then_rejects_repeat(api_client):
    queue_id = (await api_client.post("/api/v1/queue", json=IMAGE_REQUEST, headers=auth())).json()["queue_id"]

    first = await api_client.post(f"/api/v1/queue/{queue_id}/cancel", headers=auth())
    second = await api_client.post(f"/api/v1/queue/{queue_id}/cancel", headers=auth())

    assert first.status_code == 200
    assert first.json() == {"ok": True, "refunded": True}
    assert second.status_code == 409
    assert second.json()["code"] == "INVALID_STATE"
    assert (await api_client.get("/api/v1/credits", headers=auth())).json()["balance"] == 500

    events = (await api_client.get(f"/api/v1/queue/{queue_id}/events", headers=auth())).json()["events"]
    assert [e["event_type"] for e in events] == ["created", "debited", "cancelled", "refunded"]


@pytest.mark.asyncio
async def test_client_reported_failure_refunds(api_client):
    queue_id = (await api_client.post("/api/v1/queue", json=IMAGE_REQUEST, headers=auth())).json()["queue_id"]

    response = await api_client.post(
        f"/api/v1/queue/{queue_id}/fail",
        json={"error": "upload rejected", "error_code": "UPLOAD_FAILED"},
        headers=auth(),
    )

    item = response.json()["item"]
    assert response.status_code == 200
    assert item["status"] == "failed"
    assert item["error_code"] == "UPLOAD_FAILED"
    assert (await api_client.get("/api/v1/credits", headers=auth())).json()["balance"] == 500


@pytest.mark.asyncio
async def test_other_users_items_are_not_found(api_client):
    queue_id = (await api_client.post("/api/v1/queue", json=IMAGE_REQUEST, headers=auth("owner"))).json()["queue_id"]

    response = await api_client.get(f"/api/v1/queue/{queue_id}", headers=auth("someone-else"))
    cancel = await api_client.post(f"/api/v1/queue/{queue_id}/cancel", headers=auth("someone-else"))

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"
    assert cancel.status_code == 404


@pytest.mark.asyncio
async def test_postpaid_admission_quotes_nothing(api_client):
    body = {
        "generation_type": "video",
        "provider": "replicate",
        "model": "wan-video/wan-2.5-t2v",
        "payload": {"prompt": "surf", "duration": 5},
        "billing_mode": "postpaid",
    }

    data = (await api_client.post("/api/v1/queue", json=body, headers=auth())).json()

    assert data["credits_cost"] == 0
    assert (await api_client.get("/api/v1/credits", headers=auth())).json()["balance"] == 500


@pytest.mark.asyncio
async def test_postpaid_admission_beyond_balance_returns_402(api_client):
    body = {
        "generation_type": "video",
        "provider": "replicate",
        "model": "google/veo-3",
        "payload": {"prompt": "surf", "duration": 5},
        "billing_mode": "postpaid",
    }

    response = await api_client.post("/api/v1/queue", json=body, headers=auth())

    assert response.status_code == 402
    assert response.json()["code"] == "INSUFFICIENT_CREDITS"
    assert (await api_client.get("/api/v1/queue", headers=auth())).json()["total"] == 0
    assert (await api_client.get("/api/v1/credits", headers=auth())).json()["balance"] == 500


@pytest.mark.asyncio
async def test_postpaid_admission_with_unknown_model_returns_400(api_client):
    body = {**IMAGE_REQUEST, "model": "someone/made-up", "billing_mode": "postpaid"}

    response = await api_client.post("/api/v1/queue", json=body, headers=auth())

    assert response.status_code == 400
    assert response.json()["code"] == "PRICING_ERROR"
