"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from genledger.models.account import AccountBalance
from genledger.models.generation_job import (
    GenerationJob,
    JobStatus,
    RefundStatus,
)
from genledger.models.transaction import TokenTransaction, TransactionType

__all__ = [
    "AccountBalance",
    "TokenTransaction",
    "TransactionType",
    "GenerationJob",
    "JobStatus",
    "RefundStatus",
]
