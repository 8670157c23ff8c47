import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Optional
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from app.config import settings
from app.models.user import User
from app.models.ledger import CreditLedgerEntry, LedgerDirection

logger = logging.getLogger(__name__)


class LedgerOutcome(str, Enum):
    WRITTEN = "WRITTEN"
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"


@asynccontextmanager
async def _ledger_session(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    # Ledger writes commit or roll back on their own connection so they never
    # touch the caller's pending work or expire the caller's objects.
    async with AsyncSession(bind=db.bind, expire_on_commit=False) as session:
        yield session


def _clean_meta(meta: Optional[dict]) -> dict:
    if not meta:
        return {}
    return {k: v for k, v in meta.items() if v is not None}


class BillingService:

    @staticmethod
    async def get_user(db: AsyncSession, user_id: str) -> Optional[User]:
        result = await db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def ensure_user(db: AsyncSession, user_id: str, email: Optional[str] = None) -> User:
        """Return the user, creating it with the starting grant on first access."""
        user = await BillingService.get_user(db, user_id)
        if user:
            return user

        starting = max(int(settings.DEFAULT_STARTING_CREDITS), 0)
        async with _ledger_session(db) as session:
            session.add(User(id=user_id, email=email, credits_balance=starting))
            session.add(CreditLedgerEntry(
                user_id=user_id,
                idempotency_key=f"init:{user_id}",
                direction=LedgerDirection.GRANT,
                amount=starting,
                balance_after=starting,
                reason="user.init",
            ))
            try:
                await session.commit()
                logger.info("[Credits] Initialized user %s with %s credits", user_id, starting)
            except IntegrityError:
                # Lost a creation race; the winner's row is authoritative
                await session.rollback()

        user = await BillingService.get_user(db, user_id)
        if user is None:
            raise RuntimeError(f"User {user_id} could not be initialized")
        return user

    @staticmethod
    async def read_balance(db: AsyncSession, user_id: str) -> int:
        result = await db.execute(select(User.credits_balance).where(User.id == user_id))
        return int(result.scalar_one_or_none() or 0)

    @staticmethod
    async def _write_entry(
        db: AsyncSession,
        user_id: str,
        idempotency_key: str,
        direction: str,
        delta: int,
        reason: str,
        meta: Optional[dict],
    ) -> LedgerOutcome:
        async with _ledger_session(db) as session:
            try:
                exists = await session.execute(select(User.id).where(User.id == user_id))
                if exists.scalar_one_or_none() is None:
                    logger.warning("[Credits] %s rejected: unknown user %s", direction, user_id)
                    return LedgerOutcome.ERROR

                entry = CreditLedgerEntry(
                    user_id=user_id,
                    idempotency_key=idempotency_key,
                    direction=direction,
                    amount=delta,
                    reason=reason,
                    meta=_clean_meta(meta),
                )
                session.add(entry)
                # The unique index arbitrates concurrent writers for the same key
                await session.flush()

                stmt = (
                    update(User)
                    .where(User.id == user_id)
                    .values(credits_balance=User.credits_balance + delta)
                    .returning(User.credits_balance)
                )
                if delta < 0:
                    stmt = stmt.where(User.credits_balance >= -delta)
                result = await session.execute(stmt)
                new_balance = result.scalar_one_or_none()

                if new_balance is None:
                    await session.rollback()
                    logger.warning(
                        "[Credits] %s rejected for user %s key %s amount %s: insufficient balance or unknown user",
                        direction, user_id, idempotency_key, delta,
                    )
                    return LedgerOutcome.ERROR

                entry.balance_after = new_balance
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("[Credits] %s already recorded for user %s key %s (idempotent)", direction, user_id, idempotency_key)
                return LedgerOutcome.SKIPPED
            except SQLAlchemyError:
                await session.rollback()
                logger.exception("[Credits] %s failed for user %s key %s", direction, user_id, idempotency_key)
                return LedgerOutcome.ERROR

        logger.info(
            "[Credits] %s written: user=%s key=%s amount=%+d reason=%s balance_after=%s",
            direction, user_id, idempotency_key, delta, reason, new_balance,
        )
        return LedgerOutcome.WRITTEN

    @staticmethod
    async def write_debit_if_absent(
        db: AsyncSession,
        user_id: str,
        idempotency_key: str,
        amount: int,
        reason: str,
        meta: Optional[dict] = None,
    ) -> LedgerOutcome:
        amount = abs(int(amount))
        if amount == 0:
            return LedgerOutcome.SKIPPED
        return await BillingService._write_entry(
            db, user_id, idempotency_key, LedgerDirection.DEBIT, -amount, reason, meta,
        )

    @staticmethod
    async def issue_refund(
        db: AsyncSession,
        user_id: str,
        idempotency_key: str,
        amount: int,
        reason: str,
        meta: Optional[dict] = None,
    ) -> LedgerOutcome:
        amount = abs(int(amount))
        if amount == 0:
            return LedgerOutcome.SKIPPED
        return await BillingService._write_entry(
            db, user_id, idempotency_key, LedgerDirection.REFUND, amount, reason, meta,
        )

    @staticmethod
    async def grant_credits(
        db: AsyncSession,
        user_id: str,
        idempotency_key: str,
        amount: int,
        reason: str,
        meta: Optional[dict] = None,
    ) -> LedgerOutcome:
        amount = abs(int(amount))
        if amount == 0:
            return LedgerOutcome.SKIPPED
        return await BillingService._write_entry(
            db, user_id, idempotency_key, LedgerDirection.GRANT, amount, reason, meta,
        )

    @staticmethod
    async def list_entries(db: AsyncSession, user_id: str, limit: int = 30) -> list[CreditLedgerEntry]:
        result = await db.execute(
            select(CreditLedgerEntry)
            .where(CreditLedgerEntry.user_id == user_id)
            .order_by(CreditLedgerEntry.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


billing_service = BillingService()
