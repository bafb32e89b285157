"""Provider-neutral request/result types and error classification."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol, Union

import httpx

from genledger.services.exceptions import (
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)


class ProviderState(str, Enum):
    """Normalized provider task state."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAIL = "fail"

    @property
    def is_terminal(self) -> bool:
        return self in (ProviderState.SUCCESS, ProviderState.FAIL)


_STATE_ALIASES: dict[str, ProviderState] = {
    # KIE recordInfo states
    "waiting": ProviderState.PENDING,
    "queuing": ProviderState.PENDING,
    "queued": ProviderState.PENDING,
    "pending": ProviderState.PENDING,
    "generating": ProviderState.RUNNING,
    "running": ProviderState.RUNNING,
    "processing": ProviderState.RUNNING,
    "in_progress": ProviderState.RUNNING,
    "in_queue": ProviderState.PENDING,
    "success": ProviderState.SUCCESS,
    "succeeded": ProviderState.SUCCESS,
    "completed": ProviderState.SUCCESS,
    "done": ProviderState.SUCCESS,
    "fail": ProviderState.FAIL,
    "failed": ProviderState.FAIL,
    "error": ProviderState.FAIL,
    # KIE callback types
    "task_completed": ProviderState.SUCCESS,
    "task_success": ProviderState.SUCCESS,
    "task_failed": ProviderState.FAIL,
    "task_fail": ProviderState.FAIL,
    "task_error": ProviderState.FAIL,
}


def normalize_state(raw: Optional[str]) -> ProviderState:
    """Map a provider state string onto ProviderState.

    Unknown or empty values are treated as pending so a poll keeps waiting
    rather than resolving a job on an unrecognized state.
    """
    if not raw:
        return ProviderState.PENDING
    return _STATE_ALIASES.get(str(raw).strip().lower(), ProviderState.PENDING)


@dataclass
class JobRequest:
    """Parameters of one generation request."""

    model: str
    prompt: Optional[str] = None
    aspect_ratio: str = "auto"
    resolution: Optional[str] = None
    output_count: int = 1
    preset_id: Optional[str] = None
    source_image_ref: Optional[str] = None

    def settings(self) -> dict[str, Any]:
        """Request settings as stored on the job row."""
        return {
            "aspect_ratio": self.aspect_ratio,
            "resolution": self.resolution,
            "output_count": self.output_count,
            "preset_id": self.preset_id,
            "source_image_ref": self.source_image_ref,
        }


@dataclass
class SyncResult:
    """Provider finished the job within the submit call."""

    images: list[str]
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class AsyncResult:
    """Provider accepted the job; the outcome arrives by poll or callback."""

    external_task_id: str
    raw: dict[str, Any] = field(default_factory=dict)


SubmitResult = Union[SyncResult, AsyncResult]


@dataclass
class JobStatusReport:
    """Normalized status of a provider task."""

    state: ProviderState
    images: list[str] = field(default_factory=list)
    error_message: Optional[str] = None
    progress_percent: Optional[int] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


class ProviderClient(Protocol):
    """Interface of an external generation provider."""

    name: str

    async def submit(self, provider_model: str, request: JobRequest) -> SubmitResult: ...

    async def get_status(self, external_task_id: str) -> JobStatusReport: ...

    async def close(self) -> None: ...


def classify_http_error(provider: str, status_code: int, message: str) -> ProviderError:
    """Classify a provider HTTP failure into a retry category.

    Classification rules:
        - 408, 425, 429 (timeouts, rate limits) → TransientProviderError
        - 5xx (service unavailable) → TransientProviderError
        - 401/403 (authentication) → PermanentProviderError
        - Other 4xx (validation, content policy) → PermanentProviderError
    """
    detail = f"{provider} error {status_code}: {message}"
    if status_code in (408, 425, 429) or status_code >= 500:
        return TransientProviderError(detail, provider=provider, status_code=status_code)
    if status_code in (401, 403):
        return PermanentProviderError(
            f"{provider} authentication failed ({status_code}): {message}",
            provider=provider,
            status_code=status_code,
        )
    return PermanentProviderError(detail, provider=provider, status_code=status_code)


def classify_transport_error(provider: str, exc: httpx.HTTPError) -> ProviderError:
    """Classify an httpx transport failure (no HTTP status available)."""
    if isinstance(exc, httpx.TimeoutException):
        return TransientProviderError(f"{provider} request timeout: {exc}", provider=provider)
    return TransientProviderError(f"{provider} network error: {exc}", provider=provider)
