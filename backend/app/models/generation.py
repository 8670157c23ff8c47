from datetime import datetime
from typing import Optional
from sqlalchemy import String, Text, Integer, Boolean, DateTime, ForeignKey, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.database import Base
from app.models.base import UUIDMixin, utcnow


class GenerationStatus:
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ACTIVE = (QUEUED, PROCESSING)
    TERMINAL = (COMPLETED, FAILED, CANCELLED)
    ALL = ACTIVE + TERMINAL


class BillingMode:
    PREPAID = "prepaid"
    POSTPAID = "postpaid"


class Generation(Base, UUIDMixin):
    __tablename__ = "generations"
    __table_args__ = (
        Index("ix_generations_user_status", "user_id", "status"),
        Index("ix_generations_external_task", "external_task_id"),
    )

    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"))

    status: Mapped[str] = mapped_column(String(20), default=GenerationStatus.QUEUED)
    generation_type: Mapped[str] = mapped_column(String(50))
    provider: Mapped[str] = mapped_column(String(50))
    model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    extra_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    billing_mode: Mapped[str] = mapped_column(String(10), default=BillingMode.PREPAID)
    credits_cost: Mapped[int] = mapped_column(Integer, default=0)
    credits_deducted: Mapped[bool] = mapped_column(Boolean, default=False)
    queue_position: Mapped[int] = mapped_column(Integer, default=1)

    external_task_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    history_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    result_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    result_urls: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    user: Mapped["User"] = relationship(back_populates="generations")
    events: Mapped[list["TaskEvent"]] = relationship(back_populates="generation", cascade="all, delete-orphan")

    @property
    def is_terminal(self) -> bool:
        return self.status in GenerationStatus.TERMINAL
