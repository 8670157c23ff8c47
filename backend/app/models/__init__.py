from app.models.base import Base, TimestampMixin, UUIDMixin
from app.models.user import User
from app.models.ledger import CreditLedgerEntry, LedgerDirection
from app.models.generation import Generation, GenerationStatus, BillingMode
from app.models.task_event import TaskEvent

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    "User",
    "CreditLedgerEntry",
    "LedgerDirection",
    "Generation",
    "GenerationStatus",
    "BillingMode",
    "TaskEvent",
]
