"""GenerationJob repository for generation history and reconciliation.

State changes that can race (terminal transition, refund issue) are conditional
UPDATE statements. The caller checks the returned row to learn whether it won.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genledger.core.time import utcnow
from genledger.models.generation_job import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    GenerationJob,
    JobStatus,
    RefundStatus,
)


class GenerationJobRepository:
    """Repository for GenerationJob entities.

    Terminal transitions go through claim_terminal, a compare-and-swap on status,
    so exactly one of a poll result, a webhook callback and an operator action
    applies its outcome.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: GenerationJob) -> GenerationJob:
        """Persist new job to database.

        Args:
            job: GenerationJob entity to persist

        Returns:
            Persisted job with generated ID
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> GenerationJob | None:
        """Retrieve job by local UUID, always reloading from the database.

        Args:
            job_id: Job's unique identifier

        Returns:
            GenerationJob if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_external_task_id(self, external_task_id: str) -> GenerationJob | None:
        """Retrieve job by provider task id (callback correlation key).

        Args:
            external_task_id: Task id returned by the provider at submission

        Returns:
            GenerationJob if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.external_task_id == external_task_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def mark_processing(self, job_id: UUID, **values: Any) -> bool:
        """Move a pending job to processing.

        Args:
            job_id: Job's unique identifier
            **values: Extra columns to set (external_task_id, tokens_charged, ...)

        Returns:
            True if the job was pending and is now processing, False otherwise
        """
        result = await self.session.execute(
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,  # type: ignore[arg-type]
                GenerationJob.status == JobStatus.PENDING,  # type: ignore[arg-type]
            )
            .values(status=JobStatus.PROCESSING, updated_at=utcnow(), **values)
            .returning(GenerationJob.id)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none() is not None

    async def claim_terminal(
        self, job_id: UUID, status: JobStatus, queue_refund: bool = False, **values: Any
    ) -> GenerationJob | None:
        """Atomically move a non-terminal job into a terminal status.

        Query explanation:
        - WHERE status IN ('pending', 'processing'): Only the first writer matches
        - SET status, completed_at, ...: Terminal outcome written in one statement
        - RETURNING id, charge columns: Empty when another writer already finalized
          the job; otherwise the charge as seen by the winning UPDATE

        With queue_refund, the refund decision uses the returned charge columns,
        not an earlier read, so a charge committed just before the claim is
        refunded. Charge columns only change while the job is pending, so they
        are final once the claim succeeds.

        Args:
            job_id: Job's unique identifier
            status: Target terminal status (completed or failed)
            queue_refund: Set refund_status to pending if the job is charged
            **values: Extra columns to set alongside the status

        Returns:
            The refreshed job if this call won the transition, None otherwise

        Raises:
            ValueError: If status is not terminal
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status.value} is not a terminal status")

        now = utcnow()
        result = await self.session.execute(
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,  # type: ignore[arg-type]
                GenerationJob.status.in_(ACTIVE_STATUSES),  # type: ignore[attr-defined]
            )
            .values(status=status, completed_at=now, updated_at=now, **values)
            .returning(
                GenerationJob.id,
                GenerationJob.charge_transaction_id,
                GenerationJob.tokens_charged,
            )
            .execution_options(synchronize_session=False)
        )
        row = result.one_or_none()
        if row is None:
            return None

        if queue_refund:
            charged = row.charge_transaction_id is not None and row.tokens_charged > 0
            await self.session.execute(
                update(GenerationJob)
                .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
                .values(refund_status=RefundStatus.PENDING if charged else RefundStatus.NONE)
                .execution_options(synchronize_session=False)
            )
        return await self.get_by_id(job_id)

    async def mark_refund_issued(self, job_id: UUID) -> bool:
        """Claim a pending refund so it is credited exactly once.

        Returns:
            True if refund_status moved pending -> issued in this call
        """
        result = await self.session.execute(
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,  # type: ignore[arg-type]
                GenerationJob.refund_status == RefundStatus.PENDING,  # type: ignore[arg-type]
            )
            .values(refund_status=RefundStatus.ISSUED, updated_at=utcnow())
            .returning(GenerationJob.id)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none() is not None

    async def increment_refund_attempts(self, job_id: UUID) -> None:
        await self.session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .values(refund_attempts=GenerationJob.refund_attempts + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def update_progress(self, job_id: UUID, progress_percent: int) -> bool:
        """Record provider progress on a job that is still running.

        Returns:
            True if the job was non-terminal and got updated
        """
        result = await self.session.execute(
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,  # type: ignore[arg-type]
                GenerationJob.status.in_(ACTIVE_STATUSES),  # type: ignore[attr-defined]
            )
            .values(progress_percent=max(0, min(100, progress_percent)), updated_at=utcnow())
            .returning(GenerationJob.id)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none() is not None

    async def touch_polled(self, job_id: UUID) -> None:
        await self.session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .values(last_polled_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def set_charge(self, job_id: UUID, tokens_charged: int, charge_transaction_id: UUID) -> None:
        """Link a job to its usage debit (deferred charge on completion)."""
        await self.session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .values(tokens_charged=tokens_charged, charge_transaction_id=charge_transaction_id)
            .execution_options(synchronize_session=False)
        )

    async def mark_dead_lettered(self, job_id: UUID, created_before: datetime) -> bool:
        """Flag a stuck job for operator follow-up (set once).

        Args:
            job_id: Job's unique identifier
            created_before: Only jobs created before this instant are flagged

        Returns:
            True if the flag was set by this call
        """
        result = await self.session.execute(
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,  # type: ignore[arg-type]
                GenerationJob.status.in_(ACTIVE_STATUSES),  # type: ignore[attr-defined]
                GenerationJob.dead_lettered_at.is_(None),  # type: ignore[union-attr]
                GenerationJob.created_at < created_before,  # type: ignore[arg-type]
            )
            .values(dead_lettered_at=utcnow())
            .returning(GenerationJob.id)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none() is not None

    async def get_pending_refunds(self, limit: int = 50) -> list[GenerationJob]:
        """Retrieve failed jobs whose refund has not been credited yet.

        Query explanation:
        - WHERE refund_status = 'pending': Refund owed but not issued
        - ORDER BY completed_at ASC: Oldest failures first

        Args:
            limit: Maximum number of jobs to retrieve (default: 50)

        Returns:
            List of jobs awaiting refund
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.refund_status == RefundStatus.PENDING)  # type: ignore[arg-type]
            .order_by(GenerationJob.completed_at.asc())  # type: ignore[union-attr]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_stale_processing(self, cutoff: datetime, limit: int = 50) -> list[GenerationJob]:
        """Retrieve async jobs that have not been polled since the cutoff.

        Query explanation:
        - WHERE status = 'processing' AND external_task_id IS NOT NULL: Running provider tasks
        - AND dead_lettered_at IS NULL: Jobs already handed to an operator are skipped
        - AND COALESCE(last_polled_at, created_at) < :cutoff: Nobody looked recently
        - ORDER BY created_at ASC: Oldest first

        Args:
            cutoff: Jobs last polled before this instant are stale
            limit: Maximum number of jobs to retrieve (default: 50)

        Returns:
            List of stale jobs
        """
        last_seen = func.coalesce(GenerationJob.last_polled_at, GenerationJob.created_at)
        result = await self.session.execute(
            select(GenerationJob)
            .where(
                GenerationJob.status == JobStatus.PROCESSING,  # type: ignore[arg-type]
                GenerationJob.external_task_id.is_not(None),  # type: ignore[union-attr]
                GenerationJob.dead_lettered_at.is_(None),  # type: ignore[union-attr]
                last_seen < cutoff,
            )
            .order_by(GenerationJob.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_by_account(
        self, account_id: str, limit: int = 20, offset: int = 0
    ) -> tuple[list[GenerationJob], int]:
        """Retrieve an account's generation history with total count.

        Args:
            account_id: External account identifier
            limit: Maximum number of jobs to return (default: 20)
            offset: Number of jobs to skip (default: 0)

        Returns:
            Tuple of (jobs newest first, total number of jobs for the account)
        """
        count_result = await self.session.execute(
            select(func.count(GenerationJob.id)).where(  # type: ignore[arg-type]
                GenerationJob.account_id == account_id  # type: ignore[arg-type]
            )
        )
        total = count_result.scalar() or 0

        data_result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.account_id == account_id)  # type: ignore[arg-type]
            .order_by(GenerationJob.created_at.desc())  # type: ignore[attr-defined]
            .offset(offset)
            .limit(limit)
        )
        return list(data_result.scalars().all()), total
