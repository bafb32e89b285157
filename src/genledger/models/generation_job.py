"""GenerationJob entity - Generation history with lifecycle status tracking."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from genledger.core.time import utcnow


class JobStatus(str, Enum):
    """Generation job lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)
ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)


class RefundStatus(str, Enum):
    """Refund bookkeeping for failed jobs that were charged."""

    NONE = "none"
    PENDING = "pending"
    ISSUED = "issued"


class GenerationJob(SQLModel, table=True):
    """GenerationJob is one request to an external provider and its outcome.

    external_task_id is the correlation key used by status polls and webhook
    callbacks. A job maps to at most one usage debit (charge_transaction_id) and
    at most one refund.
    """

    __tablename__ = "generation_jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    account_id: str = Field(foreign_key="account_balances.account_id", index=True, max_length=255)
    external_task_id: Optional[str] = Field(default=None, max_length=255, unique=True)
    provider: str = Field(max_length=50)
    model: str = Field(max_length=100)
    prompt: Optional[str] = Field(default=None)
    settings: dict = Field(default_factory=dict, sa_column=Column(JSON))
    status: JobStatus = Field(default=JobStatus.PENDING, index=True)
    images: Optional[list] = Field(default=None, sa_column=Column(JSON))
    error_message: Optional[str] = Field(default=None, max_length=1000)
    progress_percent: int = Field(default=0, ge=0, le=100)

    tokens_reserved: int = Field(default=0, ge=0)
    tokens_charged: int = Field(default=0, ge=0)
    charge_transaction_id: Optional[UUID] = Field(default=None)
    refund_status: RefundStatus = Field(default=RefundStatus.NONE, index=True)
    refund_attempts: int = Field(default=0, ge=0)

    provider_metadata: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    last_polled_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    dead_lettered_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
