"""KIE task API client (createTask / recordInfo) and webhook signature helpers."""

import base64
import hashlib
import hmac
import json
from typing import Any, Optional

import httpx
import structlog

from genledger.services.exceptions import PermanentProviderError
from genledger.services.providers.base import (
    AsyncResult,
    JobRequest,
    JobStatusReport,
    ProviderState,
    classify_http_error,
    classify_transport_error,
    normalize_state,
)

logger = structlog.get_logger()

DEFAULT_BASE_URL = "https://api.kie.ai/api/v1"


class KieClient:
    """Async client for KIE generation tasks.

    Every KIE model runs as a task: createTask returns a taskId and the outcome
    is read from recordInfo or delivered to the configured callback URL.
    """

    name = "kie"

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        callback_url: str = "",
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize KIE client.

        Args:
            api_key: KIE API key (from KIE_API_KEY env var)
            base_url: API root, without trailing slash
            callback_url: Webhook URL KIE calls on task state changes (optional)
            timeout: Request timeout in seconds
            http_client: Preconfigured httpx client (tests pass a MockTransport client)
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.callback_url = (callback_url or "").strip()
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def build_input(self, provider_model: str, request: JobRequest) -> dict[str, Any]:
        """Translate a JobRequest into the model's input object."""
        payload: dict[str, Any] = {"output_format": "png"}
        if request.prompt:
            payload["prompt"] = request.prompt
        if request.source_image_ref:
            if "upscale" in provider_model:
                payload["image"] = request.source_image_ref
            else:
                payload["image_urls"] = [request.source_image_ref]
        if "upscale" not in provider_model:
            payload["image_size"] = request.aspect_ratio
            payload["num_images"] = request.output_count
        if request.resolution:
            payload["image_resolution"] = request.resolution
        return payload

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            raise classify_transport_error(self.name, e) from e

        if response.status_code >= 400:
            raise classify_http_error(self.name, response.status_code, response.text[:500])

        try:
            body = response.json()
        except ValueError as e:
            raise PermanentProviderError(
                f"kie returned non-JSON response: {response.text[:200]}", provider=self.name
            ) from e

        # KIE reports API errors with HTTP 200 and a non-200 body code
        code = body.get("code") if isinstance(body, dict) else None
        if code not in (None, 200, "200"):
            try:
                status_code = int(code)
            except (TypeError, ValueError):
                status_code = 400
            raise classify_http_error(self.name, status_code, str(body.get("msg") or body))
        return body

    async def submit(self, provider_model: str, request: JobRequest) -> AsyncResult:
        """Create a KIE task.

        Args:
            provider_model: KIE model id (e.g. google/nano-banana-edit)
            request: Generation parameters

        Returns:
            AsyncResult carrying the KIE taskId

        Raises:
            TransientProviderError: Timeout, rate limit, 5xx
            PermanentProviderError: Auth failure, validation error, missing taskId
        """
        body: dict[str, Any] = {
            "model": provider_model,
            "input": self.build_input(provider_model, request),
        }
        if self.callback_url:
            body["callBackUrl"] = self.callback_url

        record = await self._request("POST", "/jobs/createTask", json=body)
        task_id = self.extract_task_id(record)
        if not task_id:
            raise PermanentProviderError("kie createTask returned no taskId", provider=self.name)

        logger.info("kie.task_created", model=provider_model, task_id=task_id)
        return AsyncResult(external_task_id=task_id, raw=record)

    async def get_task(self, task_id: str) -> dict[str, Any]:
        return await self._request("GET", "/jobs/recordInfo", params={"taskId": task_id})

    async def get_status(self, external_task_id: str) -> JobStatusReport:
        record = await self.get_task(external_task_id)
        return self.parse_record(record)

    @staticmethod
    def _data(record: dict[str, Any]) -> dict[str, Any]:
        data = record.get("data")
        return data if isinstance(data, dict) else {}

    @classmethod
    def extract_task_id(cls, record: dict[str, Any]) -> str:
        data = cls._data(record)
        for candidate in (
            data.get("taskId"),
            data.get("task_id"),
            record.get("taskId"),
            record.get("task_id"),
        ):
            value = str(candidate or "").strip()
            if value:
                return value
        return ""

    @classmethod
    def get_state(cls, record: dict[str, Any]) -> ProviderState:
        """Read the task state from a recordInfo response or a callback payload.

        A callbackType (task_completed / task_failed) wins over the state field.
        """
        data = cls._data(record)
        callback_type = (
            data.get("callbackType")
            or data.get("callback_type")
            or record.get("callbackType")
            or record.get("callback_type")
        )
        if callback_type:
            state = normalize_state(callback_type)
            if state.is_terminal:
                return state
        return normalize_state(
            data.get("state") or data.get("status") or record.get("state") or record.get("status")
        )

    @classmethod
    def parse_result_urls(cls, record: dict[str, Any]) -> list[str]:
        data = cls._data(record)
        urls: list[str] = []

        def extend_from(value: Any) -> None:
            if isinstance(value, str):
                if value.strip():
                    urls.append(value.strip())
            elif isinstance(value, list):
                for item in value:
                    if isinstance(item, str) and item.strip():
                        urls.append(item.strip())
                    elif isinstance(item, dict) and item.get("url"):
                        urls.append(str(item["url"]).strip())

        result_json = (
            data.get("resultJson")
            or data.get("result_json")
            or record.get("resultJson")
            or record.get("result_json")
        )
        parsed: dict[str, Any] = {}
        if isinstance(result_json, str) and result_json:
            try:
                loaded = json.loads(result_json)
            except ValueError as e:
                logger.warning("kie.result_parse_failed", error=str(e))
            else:
                parsed = loaded if isinstance(loaded, dict) else {}
        elif isinstance(result_json, dict):
            parsed = result_json

        for source in (parsed, data, record):
            extend_from(source.get("resultUrls"))
            extend_from(source.get("result_urls"))
            extend_from(source.get("images"))
            extend_from(source.get("image"))

        return list(dict.fromkeys(urls))

    @classmethod
    def get_fail_message(cls, record: dict[str, Any]) -> Optional[str]:
        data = cls._data(record)
        message = (
            data.get("failMsg")
            or data.get("fail_msg")
            or data.get("error")
            or record.get("failMsg")
            or record.get("fail_msg")
        )
        if not message:
            fail_code = data.get("failCode") or data.get("fail_code")
            if fail_code:
                message = f"kie fail code {fail_code}"
        return str(message) if message else None

    @classmethod
    def get_progress(cls, record: dict[str, Any]) -> Optional[int]:
        data = cls._data(record)
        progress = data.get("progress", record.get("progress"))
        if progress is None:
            return None
        try:
            return max(0, min(100, int(float(progress))))
        except (TypeError, ValueError):
            return None

    @classmethod
    def parse_record(cls, record: dict[str, Any]) -> JobStatusReport:
        """Normalize a recordInfo response or callback payload into a JobStatusReport."""
        state = cls.get_state(record)
        report = JobStatusReport(state=state, progress_percent=cls.get_progress(record), raw=record)
        if state == ProviderState.SUCCESS:
            report.images = cls.parse_result_urls(record)
        elif state == ProviderState.FAIL:
            report.error_message = cls.get_fail_message(record) or "Task failed"
        return report

    @staticmethod
    def compute_webhook_signature(task_id: str, timestamp_seconds: str, webhook_hmac_key: str) -> str:
        message = f"{task_id}.{timestamp_seconds}"
        digest = hmac.new(
            webhook_hmac_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
        ).digest()
        return base64.b64encode(digest).decode("utf-8")

    @classmethod
    def verify_webhook_signature(
        cls,
        *,
        task_id: str,
        timestamp_seconds: str,
        received_signature: str,
        webhook_hmac_key: str,
    ) -> bool:
        expected = cls.compute_webhook_signature(task_id, timestamp_seconds, webhook_hmac_key)
        return hmac.compare_digest(expected, (received_signature or "").strip())


