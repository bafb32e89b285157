"""Generation job API endpoints.

- POST /api/generations - Price, charge and submit a generation job
- GET /api/generations/{job_id} - Current state of a job
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from genledger.api.dependencies import get_services, to_http_exception
from genledger.models.generation_job import GenerationJob
from genledger.services.container import Services
from genledger.services.exceptions import GenLedgerError, ProviderError
from genledger.services.providers.base import JobRequest

logger = structlog.get_logger()
router = APIRouter(prefix="/api/generations", tags=["generations"])


class SubmitGenerationRequest(BaseModel):
    """Request model for submitting a generation job."""

    account_id: str = Field(..., min_length=1, max_length=255)
    model: str = Field(..., description="nanobanana, nanobanana-upscale, seedream or topaz-upscale")
    prompt: Optional[str] = Field(default=None, max_length=4000)
    aspect_ratio: str = Field(default="auto")
    resolution: Optional[str] = Field(default=None)
    output_count: int = Field(default=1)
    preset_id: Optional[str] = Field(default=None)
    source_image_ref: Optional[str] = Field(
        default=None, description="URL of the input image for edit and upscale models"
    )

    def to_job_request(self) -> JobRequest:
        return JobRequest(
            model=self.model,
            prompt=self.prompt,
            aspect_ratio=self.aspect_ratio,
            resolution=self.resolution,
            output_count=self.output_count,
            preset_id=self.preset_id,
            source_image_ref=self.source_image_ref,
        )


class GenerationJobDTO(BaseModel):
    """Data Transfer Object for generation jobs in API responses."""

    id: UUID
    account_id: str
    model: str
    provider: str
    prompt: Optional[str] = None
    settings: dict[str, Any] = Field(default_factory=dict)
    status: str = Field(..., description="pending, processing, completed or failed")
    images: list[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    progress_percent: int = 0
    tokens_reserved: int
    tokens_charged: int
    refund_status: str
    external_task_id: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: GenerationJob) -> "GenerationJobDTO":
        return cls(
            id=job.id,
            account_id=job.account_id,
            model=job.model,
            provider=job.provider,
            prompt=job.prompt,
            settings=job.settings or {},
            status=job.status.value,
            images=list(job.images or []),
            error_message=job.error_message,
            progress_percent=job.progress_percent,
            tokens_reserved=job.tokens_reserved,
            tokens_charged=job.tokens_charged,
            refund_status=job.refund_status.value,
            external_task_id=job.external_task_id,
            created_at=job.created_at,
            completed_at=job.completed_at,
        )


@router.post("", response_model=GenerationJobDTO, status_code=status.HTTP_202_ACCEPTED)
async def submit_generation(
    request: SubmitGenerationRequest,
    services: Services = Depends(get_services),
) -> GenerationJobDTO:
    """Submit a generation job.

    Synchronous models return the completed job; async models return the job in
    processing state, to be finished by polling or the provider callback.

    Raises:
        HTTPException 400: Unknown model or invalid parameters
        HTTPException 402: Balance below the request cost
        HTTPException 404: Account not initialized
        HTTPException 502: Provider rejected the job (nothing charged)
    """
    try:
        job = await services.generation.submit_job(request.account_id, request.to_job_request())
    except ProviderError as e:
        logger.warning("job.submit_rejected", account_id=request.account_id, error=str(e))
        raise to_http_exception(e)
    except GenLedgerError as e:
        raise to_http_exception(e)

    return GenerationJobDTO.from_job(job)


@router.get("/{job_id}", response_model=GenerationJobDTO, status_code=status.HTTP_200_OK)
async def get_generation(
    job_id: UUID,
    services: Services = Depends(get_services),
) -> GenerationJobDTO:
    """Get a generation job by id.

    Raises:
        HTTPException 404: Unknown job id
    """
    try:
        job = await services.generation.get_job(job_id)
    except GenLedgerError as e:
        raise to_http_exception(e)
    return GenerationJobDTO.from_job(job)
