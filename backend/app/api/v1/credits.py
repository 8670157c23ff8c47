from datetime import datetime
from typing import Optional, List
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from app.database import get_db
from app.api.deps import get_current_user
from app.models.user import User
from app.services.billing import billing_service

router = APIRouter()


class LedgerEntryResponse(BaseModel):
    id: str
    idempotency_key: str
    direction: str
    amount: int
    balance_after: Optional[int] = None
    reason: str
    meta: Optional[dict] = None
    created_at: datetime


class CreditsResponse(BaseModel):
    ok: bool = True
    balance: int
    entries: List[LedgerEntryResponse]


@router.get("", response_model=CreditsResponse)
async def get_credits(
    limit: int = Query(30, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    balance = await billing_service.read_balance(db, current_user.id)
    entries = await billing_service.list_entries(db, current_user.id, limit=limit)
    return CreditsResponse(
        balance=balance,
        entries=[
            LedgerEntryResponse(
                id=e.id,
                idempotency_key=e.idempotency_key,
                direction=e.direction,
                amount=e.amount,
                balance_after=e.balance_after,
                reason=e.reason,
                meta=e.meta,
                created_at=e.created_at,
            )
            for e in entries
        ],
    )
