from app.adapters.base import BaseAdapter, SubmitResult, JobStatus, JobState, ProviderError
from app.adapters.registry import AdapterRegistry
from app.adapters.replicate import ReplicateAdapter
from app.adapters.kie import KieAdapter

__all__ = [
    "BaseAdapter",
    "SubmitResult",
    "JobStatus",
    "JobState",
    "ProviderError",
    "AdapterRegistry",
    "ReplicateAdapter",
    "KieAdapter",
]
