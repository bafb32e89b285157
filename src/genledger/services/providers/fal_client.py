"""Fal client for synchronous image models (Topaz upscale)."""

from typing import Any, Optional

import httpx
import structlog

from genledger.services.exceptions import PermanentProviderError
from genledger.services.providers.base import (
    AsyncResult,
    JobRequest,
    JobStatusReport,
    ProviderState,
    SubmitResult,
    SyncResult,
    classify_http_error,
    classify_transport_error,
    normalize_state,
)

logger = structlog.get_logger()

DEFAULT_BASE_URL = "https://fal.run/fal-ai"


class FalClient:
    """Async client for Fal model endpoints.

    Fal normally answers with the finished images. When the request is queued
    instead, the request_id is returned as an async task and polled through the
    queue status endpoint.
    """

    name = "fal"

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 120.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize Fal client.

        Args:
            api_key: Fal API key (from FAL_API_KEY env var)
            base_url: API root, without trailing slash
            timeout: Request timeout in seconds (upscales are slow)
            http_client: Preconfigured httpx client (tests pass a MockTransport client)
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Key {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            raise classify_transport_error(self.name, e) from e

        if response.status_code >= 400:
            raise classify_http_error(self.name, response.status_code, response.text[:500])
        try:
            return response.json()
        except ValueError as e:
            raise PermanentProviderError(
                f"fal returned non-JSON response: {response.text[:200]}", provider=self.name
            ) from e

    @staticmethod
    def parse_images(body: dict[str, Any]) -> list[str]:
        urls: list[str] = []
        images = body.get("images")
        if isinstance(images, list):
            for image in images:
                url = image.get("url") if isinstance(image, dict) else image
                if isinstance(url, str) and url:
                    urls.append(url)
        single = body.get("image")
        if isinstance(single, dict) and single.get("url"):
            urls.append(single["url"])
        elif isinstance(single, str) and single:
            urls.append(single)
        return list(dict.fromkeys(urls))

    async def submit(self, provider_model: str, request: JobRequest) -> SubmitResult:
        """Run a Fal model.

        Returns:
            SyncResult with image URLs, or AsyncResult with the queue request_id

        Raises:
            TransientProviderError: Timeout, rate limit, 5xx
            PermanentProviderError: Auth failure, validation error, empty result
        """
        payload: dict[str, Any] = {"output_format": "png"}
        if request.source_image_ref:
            payload["image_url"] = request.source_image_ref
        if request.prompt:
            payload["prompt"] = request.prompt

        body = await self._request("POST", f"{self.base_url}/{provider_model}", json=payload)

        images = self.parse_images(body)
        if images:
            logger.info("fal.completed", model=provider_model, image_count=len(images))
            return SyncResult(images=images, raw=body)

        request_id = str(body.get("request_id") or "").strip()
        if request_id and normalize_state(body.get("status")) != ProviderState.FAIL:
            logger.info("fal.queued", model=provider_model, request_id=request_id)
            return AsyncResult(external_task_id=request_id, raw=body)

        error = body.get("error") if isinstance(body.get("error"), dict) else {}
        raise PermanentProviderError(
            f"fal returned no images: {error.get('message') or body.get('detail') or 'empty result'}",
            provider=self.name,
        )

    async def get_status(self, external_task_id: str) -> JobStatusReport:
        body = await self._request(
            "GET", f"{self.base_url}/queue/requests/{external_task_id}/status"
        )
        state = normalize_state(body.get("status"))
        report = JobStatusReport(state=state, raw=body)
        if state == ProviderState.SUCCESS:
            report.images = self.parse_images(body)
        elif state == ProviderState.FAIL:
            error = body.get("error") if isinstance(body.get("error"), dict) else {}
            report.error_message = error.get("message") or "Task failed"
        return report
