from app.services.billing import billing_service, BillingService, LedgerOutcome
from app.services.queue import queue_service, QueueService
from app.services.poller import job_poller, JobPoller
from app.services.generation import generation_service, GenerationService

__all__ = [
    "billing_service", "BillingService", "LedgerOutcome",
    "queue_service", "QueueService",
    "job_poller", "JobPoller",
    "generation_service", "GenerationService",
]
