import logging
from typing import Optional
from enum import Enum
import httpx

from app.adapters.base import BaseAdapter, SubmitResult, JobStatus, JobState, ProviderError, normalize_outputs

logger = logging.getLogger(__name__)


class ReplicateStatus(str, Enum):
    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


# Input fields that affect the price and are echoed back by the provider
BILLABLE_INPUT_FIELDS = ("duration", "resolution", "generate_audio", "num_outputs")


def _confirmed_params(data: dict) -> dict:
    provider_input = data.get("input") or {}
    if not isinstance(provider_input, dict):
        return {}
    params = {k: provider_input[k] for k in BILLABLE_INPUT_FIELDS if k in provider_input}
    if "num_outputs" in params:
        params["num_images"] = params.pop("num_outputs")
    return params


class ReplicateAdapter(BaseAdapter):
    name = "replicate"
    display_name = "Replicate"

    BASE_URL = "https://api.replicate.com/v1"

    def __init__(self, api_key: str, **kwargs):
        super().__init__(api_key, **kwargs)
        self.wait_seconds = kwargs.get("wait_seconds", 0)
        self.timeout = kwargs.get("timeout", 120.0)

    def _get_headers(self) -> dict:
        headers = super()._get_headers()
        if self.wait_seconds:
            headers["Prefer"] = f"wait={self.wait_seconds}"
        return headers

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code in (200, 201, 202):
            return
        try:
            error_data = response.json() if response.text else {}
        except ValueError:
            error_data = {"detail": response.text}
        if not isinstance(error_data, dict):
            error_data = {"detail": response.text}
        raise ProviderError(
            error_data.get("detail") or f"HTTP {response.status_code}",
            code=f"HTTP_{response.status_code}",
            retryable=response.status_code >= 500 or response.status_code == 429,
            raw_response=error_data,
        )

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            raise ProviderError("Malformed response from Replicate", code="MALFORMED_RESPONSE")
        if not isinstance(data, dict):
            raise ProviderError("Replicate response is not an object", code="MALFORMED_RESPONSE")
        return data

    async def submit(self, model: Optional[str], input_data: dict) -> SubmitResult:
        if not model:
            raise ProviderError("Replicate requires a model", code="NO_MODEL", retryable=False)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.BASE_URL}/models/{model}/predictions",
                    headers=self._get_headers(),
                    json={"input": input_data},
                )
        except httpx.TimeoutException:
            raise ProviderError("Request timed out", code="TIMEOUT")
        except httpx.HTTPError as e:
            raise ProviderError(str(e), code="TRANSPORT_ERROR")

        self._raise_for_status(response)
        data = self._json(response)

        status = data.get("status")
        logger.info("[Replicate] Prediction %s submitted for %s: %s", data.get("id"), model, status)

        if status == ReplicateStatus.SUCCEEDED:
            return SubmitResult(
                outputs=normalize_outputs(data.get("output")),
                confirmed_params=_confirmed_params(data),
                raw_response=data,
            )
        if status in (ReplicateStatus.FAILED, ReplicateStatus.CANCELED):
            raise ProviderError(data.get("error") or "Prediction failed", code="REPLICATE_FAILED", retryable=False, raw_response=data)
        if not data.get("id"):
            raise ProviderError("Replicate response has no prediction id", code="MALFORMED_RESPONSE", raw_response=data)

        return SubmitResult(job_handle=data["id"], confirmed_params=_confirmed_params(data), raw_response=data)

    async def get_job_status(self, job_handle: str) -> JobStatus:
        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.get(
                    f"{self.BASE_URL}/predictions/{job_handle}",
                    headers=self._get_headers(),
                )
        except httpx.HTTPError as e:
            raise ProviderError(str(e), code="TRANSPORT_ERROR")

        self._raise_for_status(response)
        data = self._json(response)

        status = data.get("status", "")

        if status == ReplicateStatus.SUCCEEDED:
            return JobStatus(
                state=JobState.SUCCEEDED,
                outputs=normalize_outputs(data.get("output")),
                external_status=status,
                confirmed_params=_confirmed_params(data),
                raw_response=data,
            )
        if status == ReplicateStatus.FAILED:
            return JobStatus(
                state=JobState.FAILED,
                error=data.get("error") or "Task failed",
                error_code="REPLICATE_FAILED",
                external_status=status,
                raw_response=data,
            )
        if status == ReplicateStatus.CANCELED:
            return JobStatus(
                state=JobState.FAILED,
                error="Task was canceled",
                error_code="CANCELED",
                external_status=status,
                raw_response=data,
            )
        return JobStatus(state=JobState.PENDING, external_status=status or "processing", raw_response=data)
