import json
import logging
from typing import Optional
import httpx

from app.adapters.base import BaseAdapter, SubmitResult, JobStatus, JobState, ProviderError

logger = logging.getLogger(__name__)


def _task_data(data: dict) -> dict:
    task_data = data.get("data") or {}
    if not isinstance(task_data, dict):
        raise ProviderError("KIE task data is not an object", code="MALFORMED_RESPONSE", raw_response=data)
    return task_data


def _parse_result_urls(task_data: dict) -> list:
    result_json_str = task_data.get("resultJson") or "{}"
    try:
        result_json = json.loads(result_json_str) if isinstance(result_json_str, str) else result_json_str
    except json.JSONDecodeError:
        raise ProviderError("Malformed resultJson from KIE", code="MALFORMED_RESPONSE", raw_response=task_data)
    if not isinstance(result_json, dict):
        raise ProviderError("KIE resultJson is not an object", code="MALFORMED_RESPONSE", raw_response=task_data)

    result_urls = result_json.get("resultUrls") or []
    if result_urls and isinstance(result_urls[0], dict):
        result_urls = [r.get("resultUrl") or r.get("url") for r in result_urls if r]
    if not result_urls:
        single = result_json.get("resultUrl") or result_json.get("url")
        result_urls = [single] if single else []
    return [u for u in result_urls if u]


def _confirmed_params(task_data: dict) -> dict:
    param_str = task_data.get("param") or "{}"
    try:
        param = json.loads(param_str) if isinstance(param_str, str) else param_str
    except json.JSONDecodeError:
        return {}
    provider_input = param.get("input") if isinstance(param, dict) else None
    if not isinstance(provider_input, dict):
        return {}
    return {k: provider_input[k] for k in ("duration", "resolution", "sound") if k in provider_input}


class KieAdapter(BaseAdapter):
    """Task-based provider: every submission returns a task id to poll."""

    name = "kie"
    display_name = "KIE"

    BASE_URL = "https://api.kie.ai/api/v1"

    def __init__(self, api_key: str, **kwargs):
        super().__init__(api_key, **kwargs)
        self.callback_url = kwargs.get("callback_url")

    async def _request(self, method: str, path: str, timeout: float, **kwargs) -> dict:
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.request(method, f"{self.BASE_URL}{path}", headers=self._get_headers(), **kwargs)
        except httpx.TimeoutException:
            raise ProviderError("Request timed out", code="TIMEOUT")
        except httpx.HTTPError as e:
            raise ProviderError(str(e), code="TRANSPORT_ERROR")

        try:
            data = response.json() if response.text else {}
        except ValueError:
            raise ProviderError("Malformed response from KIE", code="MALFORMED_RESPONSE")
        if not isinstance(data, dict):
            raise ProviderError("KIE response is not an object", code="MALFORMED_RESPONSE")

        if response.status_code != 200:
            raise ProviderError(
                data.get("msg") or f"HTTP {response.status_code}",
                code=f"HTTP_{response.status_code}",
                retryable=response.status_code >= 500 or response.status_code == 429,
                raw_response=data,
            )
        if data.get("code") != 200:
            code = data.get("code")
            raise ProviderError(
                data.get("msg") or "Unknown error",
                code=str(code),
                retryable=isinstance(code, int) and code >= 500,
                raw_response=data,
            )
        return data

    async def submit(self, model: Optional[str], input_data: dict) -> SubmitResult:
        payload = {"model": model, "input": input_data}
        if self.callback_url:
            payload["callBackUrl"] = self.callback_url

        data = await self._request("POST", "/jobs/createTask", timeout=60.0, json=payload)
        task_data = _task_data(data)
        task_id = task_data.get("taskId") or task_data.get("task_id")
        if not task_id:
            raise ProviderError("KIE response has no task id", code="MALFORMED_RESPONSE", raw_response=data)

        logger.info("[KIE] Task %s created for %s", task_id, model)
        return SubmitResult(job_handle=task_id, raw_response=data)

    async def get_job_status(self, job_handle: str) -> JobStatus:
        data = await self._request("GET", "/jobs/recordInfo", timeout=30.0, params={"taskId": job_handle})
        task_data = _task_data(data)
        state = (task_data.get("state") or "").lower()

        if state == "success":
            return JobStatus(
                state=JobState.SUCCEEDED,
                outputs=_parse_result_urls(task_data),
                external_status=state,
                confirmed_params=_confirmed_params(task_data),
                raw_response=data,
            )
        if state in ("fail", "failed"):
            return JobStatus(
                state=JobState.FAILED,
                error=task_data.get("failMsg") or "Task failed",
                error_code=task_data.get("failCode") or "KIE_FAILED",
                external_status=state,
                raw_response=data,
            )
        return JobStatus(state=JobState.PENDING, external_status=state or "processing", raw_response=data)
