from abc import ABC, abstractmethod
from typing import Any, Optional
from dataclasses import dataclass, field
from enum import Enum


class JobState(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class SubmitResult:
    """Outcome of a provider submission.

    Either ``outputs`` is filled (the provider answered synchronously) or
    ``job_handle`` is set and the job must be resolved later.
    """
    outputs: Optional[list] = None
    job_handle: Optional[str] = None
    confirmed_params: dict = field(default_factory=dict)
    raw_response: Optional[dict] = None

    @property
    def is_immediate(self) -> bool:
        return self.job_handle is None


@dataclass
class JobStatus:
    state: JobState
    outputs: Optional[list] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    external_status: Optional[str] = None
    confirmed_params: dict = field(default_factory=dict)
    raw_response: Optional[dict] = None


class ProviderError(Exception):
    """Raised by adapters for transport failures, 5xx and malformed responses."""

    def __init__(self, message: str, code: str = "PROVIDER_ERROR", retryable: bool = True, raw_response: Any = None):
        super().__init__(message)
        self.code = code
        self.retryable = retryable
        self.raw_response = raw_response


class BaseAdapter(ABC):
    name: str
    display_name: str

    def __init__(self, api_key: str, **kwargs):
        self.api_key = api_key
        self.config = kwargs

    @abstractmethod
    async def submit(self, model: Optional[str], input_data: dict) -> SubmitResult:
        """Start a generation."""

    @abstractmethod
    async def get_job_status(self, job_handle: str) -> JobStatus:
        """Fetch the current state of a previously submitted job."""

    def _get_headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }


def normalize_outputs(output: Any) -> list:
    if output is None:
        return []
    if isinstance(output, list):
        return [o for o in output if o]
    return [output]
