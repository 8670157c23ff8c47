from datetime import datetime
from typing import Optional, List
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user
from app.database import get_db
from app.models.generation import Generation, GenerationStatus, BillingMode
from app.models.user import User
from app.services.generation import generation_service
from app.services.poller import job_poller
from app.services.pricing import compute_cost
from app.services.queue import queue_service, AdmitRequest
from app.services.task_events import get_task_events

router = APIRouter()


class AdmitBody(BaseModel):
    generation_type: str = Field(..., max_length=50)
    provider: str = Field(..., max_length=50)
    model: Optional[str] = Field(None, max_length=100)
    payload: dict = Field(default_factory=dict)
    metadata: dict = Field(default_factory=dict)
    billing_mode: str = Field(BillingMode.PREPAID, pattern="^(prepaid|postpaid)$")
    run: bool = False


class AdmitResponse(BaseModel):
    ok: bool = True
    queue_id: str
    queue_position: int
    credits_cost: int
    pricing_version: str
    status: str = GenerationStatus.QUEUED


class QueueItem(BaseModel):
    id: str
    status: str
    generation_type: str
    provider: str
    model: Optional[str] = None
    billing_mode: str
    credits_cost: int
    credits_deducted: bool
    queue_position: int
    external_task_id: Optional[str] = None
    history_id: Optional[str] = None
    result: Optional[dict] = None
    result_url: Optional[str] = None
    result_urls: Optional[List[str]] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class QueueItemResponse(BaseModel):
    ok: bool = True
    item: QueueItem


class QueueListResponse(BaseModel):
    ok: bool = True
    items: List[QueueItem]
    total: int


class CancelResponse(BaseModel):
    ok: bool = True
    refunded: bool


class FailBody(BaseModel):
    error: str = Field("Generation failed on client", max_length=2000)
    error_code: Optional[str] = Field(None, max_length=50)


class TaskEventResponse(BaseModel):
    id: str
    event_type: str
    external_status: Optional[str] = None
    response_data: Optional[dict] = None
    error_message: Optional[str] = None
    created_at: datetime


class TaskEventsResponse(BaseModel):
    ok: bool = True
    events: List[TaskEventResponse]


def _to_item(generation: Generation) -> QueueItem:
    return QueueItem(
        id=generation.id,
        status=generation.status,
        generation_type=generation.generation_type,
        provider=generation.provider,
        model=generation.model,
        billing_mode=generation.billing_mode,
        credits_cost=generation.credits_cost,
        credits_deducted=generation.credits_deducted,
        queue_position=generation.queue_position,
        external_task_id=generation.external_task_id,
        history_id=generation.history_id,
        result=generation.result,
        result_url=generation.result_url,
        result_urls=generation.result_urls,
        error_code=generation.error_code,
        error_message=generation.error_message,
        created_at=generation.created_at,
        started_at=generation.started_at,
        completed_at=generation.completed_at,
    )


@router.post("", response_model=AdmitResponse)
async def admit(
    body: AdmitBody,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    # Post-paid items are charged on completion from the confirmed parameters
    quote = compute_cost(body.model, body.payload)
    cost = quote.cost if body.billing_mode == BillingMode.PREPAID else 0
    pricing_version = quote.pricing_version

    result = await queue_service.admit(
        db,
        current_user.id,
        AdmitRequest(
            generation_type=body.generation_type,
            provider=body.provider,
            model=body.model,
            payload=body.payload,
            metadata={**body.metadata, "pricing_version": pricing_version},
            billing_mode=body.billing_mode,
            credits_cost=cost,
        ),
    )

    status = GenerationStatus.QUEUED
    if body.run:
        generation = await generation_service.run(db, current_user.id, result.queue_id)
        status = generation.status

    return AdmitResponse(
        queue_id=result.queue_id,
        queue_position=result.queue_position,
        credits_cost=result.credits_cost,
        pricing_version=pricing_version,
        status=status,
    )


@router.get("", response_model=QueueListResponse)
async def list_items(
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    items = await queue_service.list_items(db, current_user.id, status=status, limit=limit)
    return QueueListResponse(items=[_to_item(g) for g in items], total=len(items))


@router.get("/{queue_id}", response_model=QueueItemResponse)
async def get_item(
    queue_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    generation = await queue_service.get_item(db, current_user.id, queue_id)
    return QueueItemResponse(item=_to_item(generation))


@router.post("/{queue_id}/cancel", response_model=CancelResponse)
async def cancel(
    queue_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await queue_service.cancel(db, current_user.id, queue_id)
    return CancelResponse(refunded=result["refunded"])


@router.post("/{queue_id}/resolve", response_model=QueueItemResponse)
async def resolve(
    queue_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    generation = await job_poller.resolve(db, current_user.id, queue_id)
    return QueueItemResponse(item=_to_item(generation))


@router.post("/{queue_id}/fail", response_model=QueueItemResponse)
async def fail(
    queue_id: str,
    body: FailBody,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    generation = await queue_service.get_item(db, current_user.id, queue_id)
    await queue_service.mark_failed(db, current_user.id, queue_id, body.error, body.error_code or "CLIENT_REPORTED")
    return QueueItemResponse(item=_to_item(generation))


@router.get("/{queue_id}/events", response_model=TaskEventsResponse)
async def get_events(
    queue_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    generation = await queue_service.get_item(db, current_user.id, queue_id)
    events = await get_task_events(db, generation.id)
    return TaskEventsResponse(events=[
        TaskEventResponse(
            id=e.id,
            event_type=e.event_type,
            external_status=e.external_status,
            response_data=e.response_data,
            error_message=e.error_message,
            created_at=e.created_at,
        )
        for e in events
    ])
