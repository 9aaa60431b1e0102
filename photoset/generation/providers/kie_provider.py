"""Kie.ai task-based image generation provider."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

import httpx

from photoset.generation.providers.base import (
    TASK_STATE_COMPLETED,
    TASK_STATE_FAILED,
    TASK_STATE_PENDING,
    ImageTaskProvider,
    ProviderStatusError,
    ProviderTaskCreationError,
    TaskCreationOutput,
    TaskStatusOutput,
    UnitPayload,
)


MAX_REFERENCE_INPUTS = 14
SUCCESS_STATES = {"success", "completed"}
FAILURE_STATES = {"fail", "failed", "error"}


def _detail(response: httpx.Response) -> str:
    detail = response.text.strip()
    if len(detail) > 240:
        detail = detail[:240] + "..."
    return detail


class KieImageProvider(ImageTaskProvider):
    provider_name = "kie"

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "nano-banana-pro",
        base_url: str = "https://api.kie.ai/api/v1",
        timeout_seconds: int = 30,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._api_key = api_key.strip()
        self._model = model.strip()
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = max(1, timeout_seconds)
        self._client = client

    def _headers(self) -> Dict[str, str]:
        if not self._api_key:
            raise ProviderTaskCreationError("kie_api_key_missing")
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            return self._client.request(method, url, **kwargs)
        with httpx.Client(timeout=self._timeout_seconds) as client:
            return client.request(method, url, **kwargs)

    def create_task(self, unit: UnitPayload) -> TaskCreationOutput:
        task_input: Dict[str, Any] = {
            "prompt": unit.prompt,
            "output_format": unit.output_format,
            "image_size": unit.aspect_ratio,
        }
        references = [value for value in unit.reference_inputs if value][:MAX_REFERENCE_INPUTS]
        if any(value.startswith("data:") for value in references):
            raise ProviderTaskCreationError("kie_reference_inputs_must_be_urls")
        if references:
            task_input["image_input"] = references

        try:
            response = self._request(
                "POST",
                f"{self._base_url}/jobs/createTask",
                headers=self._headers(),
                json={"model": self._model, "input": task_input},
            )
        except httpx.HTTPError as exc:
            raise ProviderTaskCreationError(f"kie_create_task_transport_error {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderTaskCreationError(
                f"kie_create_task_failed status={response.status_code} detail={_detail(response)}"
            )

        try:
            body: Dict[str, Any] = response.json()
        except Exception as exc:  # pragma: no cover
            raise ProviderTaskCreationError("kie_create_task_invalid_json_response") from exc
        if not isinstance(body, dict):
            raise ProviderTaskCreationError("kie_create_task_invalid_json_response")

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        task_id = str(data.get("taskId") or body.get("taskId") or "").strip()
        if not task_id:
            message = str(body.get("msg") or body.get("message") or "no_task_id")
            raise ProviderTaskCreationError(f"kie_create_task_missing_task_id detail={message[:240]}")

        return TaskCreationOutput(provider=self.provider_name, task_id=task_id, payload=body)

    @staticmethod
    def _result_url(data: Dict[str, Any]) -> Optional[str]:
        raw_result = data.get("resultJson")
        if isinstance(raw_result, str) and raw_result.strip():
            try:
                raw_result = json.loads(raw_result)
            except ValueError:
                raw_result = None
        if isinstance(raw_result, dict):
            urls = raw_result.get("resultUrls")
            if isinstance(urls, list) and urls and isinstance(urls[0], str):
                return urls[0]
            if isinstance(raw_result.get("url"), str):
                return raw_result["url"]

        output = data.get("output")
        if isinstance(output, dict) and isinstance(output.get("url"), str):
            return output["url"]
        if isinstance(data.get("url"), str):
            return data["url"]
        return None

    def check_task(self, task_id: str) -> TaskStatusOutput:
        try:
            response = self._request(
                "GET",
                f"{self._base_url}/jobs/recordInfo",
                headers=self._headers(),
                params={"taskId": task_id},
            )
        except (httpx.HTTPError, ProviderTaskCreationError) as exc:
            raise ProviderStatusError(f"kie_record_info_unavailable {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderStatusError(
                f"kie_record_info_failed status={response.status_code} detail={_detail(response)}"
            )

        try:
            body: Dict[str, Any] = response.json()
        except Exception as exc:  # pragma: no cover
            raise ProviderStatusError("kie_record_info_invalid_json_response") from exc
        if not isinstance(body, dict):
            raise ProviderStatusError("kie_record_info_invalid_json_response")

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        state = str(data.get("state") or data.get("status") or body.get("status") or "").strip().lower()

        if state in SUCCESS_STATES:
            result_url = self._result_url(data)
            if not result_url:
                return TaskStatusOutput(
                    provider=self.provider_name,
                    task_id=task_id,
                    state=TASK_STATE_FAILED,
                    error="kie_result_url_missing",
                    payload=body,
                )
            return TaskStatusOutput(
                provider=self.provider_name,
                task_id=task_id,
                state=TASK_STATE_COMPLETED,
                result_url=result_url,
                payload=body,
            )

        if state in FAILURE_STATES:
            error = str(data.get("failMsg") or data.get("error") or body.get("error") or "unknown_error")
            return TaskStatusOutput(
                provider=self.provider_name,
                task_id=task_id,
                state=TASK_STATE_FAILED,
                error=error[:240],
                payload=body,
            )

        return TaskStatusOutput(
            provider=self.provider_name,
            task_id=task_id,
            state=TASK_STATE_PENDING,
            payload=body,
        )
