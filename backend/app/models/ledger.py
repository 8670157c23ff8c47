from datetime import datetime
from typing import Optional
from sqlalchemy import String, Integer, DateTime, ForeignKey, JSON, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.database import Base
from app.models.base import UUIDMixin, utcnow


class LedgerDirection:
    DEBIT = "debit"
    REFUND = "refund"
    GRANT = "grant"


class CreditLedgerEntry(Base, UUIDMixin):
    """Immutable credit movement.

    ``amount`` is signed: negative for debits, positive for refunds and grants.
    At most one entry exists per (user, idempotency key, direction).
    """

    __tablename__ = "credit_ledger"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", "direction", name="uq_credit_ledger_idempotency"),
        Index("ix_credit_ledger_user_created", "user_id", "created_at"),
    )

    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"))
    idempotency_key: Mapped[str] = mapped_column(String(191))
    direction: Mapped[str] = mapped_column(String(10))
    amount: Mapped[int] = mapped_column(Integer)
    balance_after: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reason: Mapped[str] = mapped_column(String(200))
    meta: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    user: Mapped["User"] = relationship(back_populates="ledger_entries")
