"""Reconciliation of terminal job outcomes with the token ledger.

A terminal outcome (poll result, webhook callback, operator action) is applied
exactly once: the job's status change is a compare-and-swap, and the ledger side
effect of that outcome (deferred charge or refund) is keyed by job id.
"""

from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError

from genledger.models.generation_job import GenerationJob, JobStatus, RefundStatus
from genledger.models.transaction import TransactionType
from genledger.services.events import EventBus, JobResolved
from genledger.services.exceptions import (
    GenLedgerError,
    InsufficientBalance,
    InvalidRequest,
    JobNotFound,
    ReconciliationConflict,
    RefundFailure,
)
from genledger.services.ledger import TokenLedgerService, refund_key, usage_key
from genledger.services.providers.base import JobStatusReport, ProviderState

logger = structlog.get_logger()


@dataclass
class ReconcileOutcome:
    """Result of applying a terminal outcome to a job.

    Attributes:
        job_id: Job the outcome was applied to
        status: Job status after the call
        applied: False when the job was already terminal (duplicate outcome)
        refund_issued: Refund credit committed during this call
        refund_pending: Refund owed but not yet credited (retry worker will issue it)
    """

    job_id: UUID
    status: JobStatus
    applied: bool
    refund_issued: bool = False
    refund_pending: bool = False


class Reconciler:
    """Applies terminal outcomes to jobs and the ledger."""

    def __init__(self, uow_factory, ledger: TokenLedgerService, event_bus: Optional[EventBus] = None):
        self.uow_factory = uow_factory
        self.ledger = ledger
        self.event_bus = event_bus or EventBus()

    def _duplicate(self, job: GenerationJob, attempted: JobStatus) -> ReconcileOutcome:
        conflict = ReconciliationConflict(
            f"Job {job.id} already {job.status.value}, ignoring {attempted.value} outcome"
        )
        logger.debug(
            "reconciliation.duplicate",
            job_id=str(job.id),
            current_status=job.status.value,
            attempted_status=attempted.value,
            reason=str(conflict),
        )
        return ReconcileOutcome(job_id=job.id, status=job.status, applied=False)

    async def _publish(self, job: GenerationJob, refund_pending: bool = False) -> None:
        await self.event_bus.publish(
            JobResolved(
                job_id=job.id,
                account_id=job.account_id,
                model=job.model,
                status=job.status,
                images=list(job.images or []),
                error_message=job.error_message,
                tokens_charged=job.tokens_charged,
                refund_pending=refund_pending,
            )
        )

    async def finalize_success(
        self,
        job_id: UUID,
        images: list[str],
        provider_metadata: Optional[dict[str, Any]] = None,
    ) -> ReconcileOutcome:
        """Complete a job and attach its images.

        Jobs submitted under the on_completion charge policy are debited here,
        in the same transaction as the status change.

        Args:
            job_id: Local job id
            images: Result image references
            provider_metadata: Raw provider payload stored for audit

        Returns:
            ReconcileOutcome; applied=False if the job was already terminal

        Raises:
            JobNotFound: If the job does not exist
        """
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
            if job is None:
                raise JobNotFound(job_id)
            if job.is_terminal:
                return self._duplicate(job, JobStatus.COMPLETED)

            claimed = await uow.jobs.claim_terminal(
                job_id,
                JobStatus.COMPLETED,
                images=list(images),
                error_message=None,
                progress_percent=100,
                provider_metadata=provider_metadata,
            )
            if claimed is None:
                return self._duplicate(await uow.jobs.get_by_id(job_id) or job, JobStatus.COMPLETED)

            if claimed.charge_transaction_id is None and claimed.tokens_reserved > 0:
                try:
                    transaction = await self.ledger.apply_debit(
                        uow,
                        claimed.account_id,
                        claimed.tokens_reserved,
                        f"{claimed.model} generation",
                        reference_id=str(job_id),
                        idempotency_key=usage_key(job_id),
                    )
                except InsufficientBalance as e:
                    # The conditional UPDATE wrote nothing; the job still completes
                    logger.error(
                        "reconciliation.deferred_charge_failed",
                        job_id=str(job_id),
                        account_id=claimed.account_id,
                        required=e.required,
                        available=e.available,
                    )
                except InvalidRequest as e:
                    # Usage key already holds a different debit; the job is not linked to it
                    logger.error(
                        "reconciliation.deferred_charge_failed",
                        job_id=str(job_id),
                        account_id=claimed.account_id,
                        error=str(e),
                    )
                else:
                    await uow.jobs.set_charge(job_id, claimed.tokens_reserved, transaction.id)
                    claimed.tokens_charged = claimed.tokens_reserved
                    claimed.charge_transaction_id = transaction.id

        logger.info(
            "job.completed",
            job_id=str(job_id),
            account_id=claimed.account_id,
            image_count=len(images),
            tokens_charged=claimed.tokens_charged,
        )
        await self._publish(claimed)
        return ReconcileOutcome(job_id=job_id, status=JobStatus.COMPLETED, applied=True)

    async def finalize_failure(
        self,
        job_id: UUID,
        error_message: str,
        provider_metadata: Optional[dict[str, Any]] = None,
    ) -> ReconcileOutcome:
        """Fail a job and refund its charge, if any.

        The refund is queued (refund_status=pending) in the same transaction as the
        status change, decided from the charge the claiming UPDATE saw, then
        credited. A refund that cannot be credited now stays queued for the refund
        retry worker.

        Args:
            job_id: Local job id
            error_message: Provider or operator failure reason
            provider_metadata: Raw provider payload stored for audit

        Returns:
            ReconcileOutcome; applied=False if the job was already terminal

        Raises:
            JobNotFound: If the job does not exist
        """
        error_message = (error_message or "Task failed")[:1000]

        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
            if job is None:
                raise JobNotFound(job_id)
            if job.is_terminal:
                return self._duplicate(job, JobStatus.FAILED)

            values: dict[str, Any] = {"error_message": error_message}
            if provider_metadata is not None:
                values["provider_metadata"] = provider_metadata
            claimed = await uow.jobs.claim_terminal(
                job_id, JobStatus.FAILED, queue_refund=True, **values
            )
            if claimed is None:
                return self._duplicate(await uow.jobs.get_by_id(job_id) or job, JobStatus.FAILED)
            refund_due = claimed.refund_status == RefundStatus.PENDING

        logger.info(
            "job.failed",
            job_id=str(job_id),
            account_id=claimed.account_id,
            error=error_message,
            refund_due=refund_due,
        )

        outcome = ReconcileOutcome(job_id=job_id, status=JobStatus.FAILED, applied=True)
        if refund_due:
            try:
                outcome.refund_issued = await self.issue_refund(job_id)
            except RefundFailure:
                outcome.refund_pending = True

        await self._publish(claimed, refund_pending=outcome.refund_pending)
        return outcome

    async def issue_refund(self, job_id: UUID) -> bool:
        """Credit the refund of a failed, charged job exactly once.

        Claims refund_status pending -> issued and writes the refund transaction
        in one database transaction.

        Returns:
            True if the refund was credited by this call, False if it was not owed
            or already issued

        Raises:
            RefundFailure: If the credit could not be written (job stays queued)
        """
        try:
            async with await self.uow_factory() as uow:
                if not await uow.jobs.mark_refund_issued(job_id):
                    return False
                job = await uow.jobs.get_by_id(job_id)
                if job is None:
                    raise JobNotFound(job_id)
                if job.tokens_charged > 0:
                    await self.ledger.apply_credit(
                        uow,
                        job.account_id,
                        job.tokens_charged,
                        TransactionType.REFUND,
                        f"Refund for failed {job.model} generation",
                        reference_id=str(job_id),
                        idempotency_key=refund_key(job_id),
                    )
        except (GenLedgerError, SQLAlchemyError) as e:
            logger.error(
                "refund.failed",
                job_id=str(job_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._bump_refund_attempts(job_id)
            raise RefundFailure(f"Refund for job {job_id} not credited: {e}") from e

        logger.info(
            "refund.issued",
            job_id=str(job_id),
            account_id=job.account_id,
            amount=job.tokens_charged,
        )
        return True

    async def _bump_refund_attempts(self, job_id: UUID) -> None:
        try:
            async with await self.uow_factory() as uow:
                await uow.jobs.increment_refund_attempts(job_id)
        except SQLAlchemyError as e:
            logger.warning("refund.attempt_count_failed", job_id=str(job_id), error=str(e))

    async def retry_pending_refunds(self, limit: int = 50) -> tuple[int, int]:
        """Re-issue refunds still queued on failed jobs.

        Returns:
            Tuple of (issued, failed) counts
        """
        async with await self.uow_factory() as uow:
            jobs = await uow.jobs.get_pending_refunds(limit)
            job_ids = [job.id for job in jobs]

        issued = failed = 0
        for job_id in job_ids:
            try:
                if await self.issue_refund(job_id):
                    issued += 1
            except RefundFailure:
                failed += 1
        return issued, failed

    async def apply_report(self, job_id: UUID, report: JobStatusReport) -> Optional[ReconcileOutcome]:
        """Apply a provider status report to a job.

        Success without images is treated as a failure.

        Returns:
            ReconcileOutcome for terminal reports, None for pending/running reports
        """
        if report.state == ProviderState.SUCCESS:
            if not report.images:
                return await self.finalize_failure(job_id, "Provider returned no images", report.raw)
            return await self.finalize_success(job_id, report.images, report.raw)
        if report.state == ProviderState.FAIL:
            return await self.finalize_failure(
                job_id, report.error_message or "Task failed", report.raw
            )

        if report.progress_percent is not None:
            async with await self.uow_factory() as uow:
                await uow.jobs.update_progress(job_id, report.progress_percent)
        return None
