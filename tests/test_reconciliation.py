"""Reconciliation tests.

Tests focus on applying terminal outcomes exactly once:
- Success keeps the usage debit, failure refunds it
- Duplicate outcomes (callback then poll, repeated callbacks) are no-ops
- First terminal outcome wins in either order, including concurrent ones
- Refunds that cannot be credited stay queued and are retried
- Deferred charge under the on_completion policy
- JobResolved events reach subscribers; a failing subscriber is isolated
"""

import asyncio
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from genledger.models.generation_job import GenerationJob, JobStatus, RefundStatus
from genledger.models.transaction import TransactionType
from genledger.repositories.generation_job import GenerationJobRepository
from genledger.services.exceptions import JobNotFound
from genledger.services.ledger import refund_key, usage_key
from genledger.services.providers.base import JobStatusReport, ProviderState


async def _charged_job(services, account_id: str, cost: int = 2, task_id: str = "task-1") -> GenerationJob:
    """Create a processing job debited the way on_acceptance submission does."""
    async with await services.uow_factory() as uow:
        job = await uow.jobs.add(
            GenerationJob(
                account_id=account_id,
                provider="kie",
                model="nanobanana",
                tokens_reserved=cost,
            )
        )
    async with await services.uow_factory() as uow:
        transaction = await services.ledger.apply_debit(
            uow, account_id, cost, "generate", reference_id=str(job.id), idempotency_key=usage_key(job.id)
        )
        await uow.jobs.mark_processing(
            job.id,
            external_task_id=task_id,
            tokens_charged=cost,
            charge_transaction_id=transaction.id,
        )
    return job


async def _uncharged_job(services, account_id: str, cost: int = 2, task_id: str = "task-1") -> GenerationJob:
    async with await services.uow_factory() as uow:
        job = await uow.jobs.add(
            GenerationJob(
                account_id=account_id,
                provider="kie",
                model="nanobanana",
                tokens_reserved=cost,
            )
        )
        await uow.jobs.mark_processing(job.id, external_task_id=task_id)
    return job


@pytest.mark.asyncio
class TestFinalizeSuccess:
    async def test_success_keeps_existing_debit(self, services, funded_account):
        """Balance 100, debit 2 -> 98; finalize_success leaves 98."""
        job = await _charged_job(services, funded_account)
        assert await services.ledger.get_balance(funded_account) == 98

        outcome = await services.reconciler.finalize_success(job.id, ["https://img/1.png"], {"raw": 1})

        assert outcome.applied is True
        assert outcome.status == JobStatus.COMPLETED
        assert await services.ledger.get_balance(funded_account) == 98
        stored = await services.generation.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.images == ["https://img/1.png"]
        assert stored.progress_percent == 100
        assert stored.provider_metadata == {"raw": 1}
        assert await services.ledger.verify_invariant(funded_account)

    async def test_success_then_stale_poll_success_is_noop(self, services, funded_account):
        """Callback success followed by a poll success: one completion, no extra ledger rows."""
        job = await _charged_job(services, funded_account)

        first = await services.reconciler.finalize_success(job.id, ["https://img/1.png"])
        second = await services.reconciler.apply_report(
            job.id, JobStatusReport(state=ProviderState.SUCCESS, images=["https://img/other.png"])
        )

        assert first.applied is True
        assert second is not None
        assert second.applied is False
        assert second.status == JobStatus.COMPLETED
        stored = await services.generation.get_job(job.id)
        assert stored.images == ["https://img/1.png"]
        _, total = await services.ledger.get_history(funded_account)
        assert total == 2  # signup bonus + usage
        assert await services.ledger.get_balance(funded_account) == 98

    async def test_concurrent_success_applied_once(self, services, funded_account):
        job = await _charged_job(services, funded_account)

        outcomes = await asyncio.gather(
            *[services.reconciler.finalize_success(job.id, [f"https://img/{i}.png"]) for i in range(5)]
        )

        assert sum(1 for o in outcomes if o.applied) == 1
        assert await services.ledger.get_balance(funded_account) == 98

    async def test_deferred_charge_debited_on_completion(self, services, funded_account):
        job = await _uncharged_job(services, funded_account, cost=4)

        await services.reconciler.finalize_success(job.id, ["https://img/1.png"])

        stored = await services.generation.get_job(job.id)
        assert stored.tokens_charged == 4
        assert stored.charge_transaction_id is not None
        assert await services.ledger.get_balance(funded_account) == 96
        transactions, _ = await services.ledger.get_history(funded_account)
        assert transactions[0].idempotency_key == usage_key(job.id)

    async def test_deferred_charge_shortfall_still_completes(self, services, funded_account):
        job = await _uncharged_job(services, funded_account, cost=4)
        await services.ledger.use_tokens(funded_account, 98)

        outcome = await services.reconciler.finalize_success(job.id, ["https://img/1.png"])

        assert outcome.applied is True
        stored = await services.generation.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.tokens_charged == 0
        assert stored.charge_transaction_id is None
        assert await services.ledger.get_balance(funded_account) == 2

    async def test_deferred_charge_skips_foreign_usage_debit(self, services, funded_account):
        """A debit already stored under the job's usage key is not adopted as its charge."""
        job = await _uncharged_job(services, funded_account, cost=8)
        await services.ledger.use_tokens(funded_account, 1, idempotency_key=usage_key(job.id))

        outcome = await services.reconciler.finalize_success(job.id, ["https://img/1.png"])

        assert outcome.applied is True
        stored = await services.generation.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.tokens_charged == 0
        assert stored.charge_transaction_id is None
        assert await services.ledger.get_balance(funded_account) == 99

    async def test_unknown_job(self, services):
        with pytest.raises(JobNotFound):
            await services.reconciler.finalize_success(uuid4(), ["https://img/1.png"])


@pytest.mark.asyncio
class TestFinalizeFailure:
    async def test_failure_refunds_debit(self, services, funded_account):
        """Balance 100, debit 2 -> 98; finalize_failure refunds 2 -> 100."""
        job = await _charged_job(services, funded_account)

        outcome = await services.reconciler.finalize_failure(job.id, "provider timeout")

        assert outcome.applied is True
        assert outcome.refund_issued is True
        assert outcome.refund_pending is False
        assert await services.ledger.get_balance(funded_account) == 100

        transactions, _ = await services.ledger.get_history(funded_account)
        refund = transactions[0]
        assert refund.type == TransactionType.REFUND
        assert refund.amount == 2
        assert refund.reference_id == str(job.id)
        assert refund.idempotency_key == refund_key(job.id)

        stored = await services.generation.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error_message == "provider timeout"
        assert stored.refund_status == RefundStatus.ISSUED
        assert await services.ledger.verify_invariant(funded_account)

    async def test_duplicate_fail_callback_refunds_once(self, services, funded_account):
        job = await _charged_job(services, funded_account)
        report = JobStatusReport(state=ProviderState.FAIL, error_message="content policy")

        first = await services.reconciler.apply_report(job.id, report)
        second = await services.reconciler.apply_report(job.id, report)

        assert first is not None and first.refund_issued is True
        assert second is not None and second.applied is False
        assert second.refund_issued is False
        assert await services.ledger.get_balance(funded_account) == 100
        transactions, _ = await services.ledger.get_history(funded_account)
        assert sum(1 for t in transactions if t.type == TransactionType.REFUND) == 1

    async def test_failure_after_success_is_noop(self, services, funded_account):
        job = await _charged_job(services, funded_account)
        await services.reconciler.finalize_success(job.id, ["https://img/1.png"])

        outcome = await services.reconciler.finalize_failure(job.id, "late failure")

        assert outcome.applied is False
        assert outcome.status == JobStatus.COMPLETED
        assert await services.ledger.get_balance(funded_account) == 98

    async def test_success_after_failure_is_noop(self, services, funded_account):
        received = []

        async def handler(event):
            received.append(event.status)

        services.event_bus.subscribe(handler)
        job = await _charged_job(services, funded_account)
        await services.reconciler.apply_report(
            job.id, JobStatusReport(state=ProviderState.FAIL, error_message="expired")
        )

        outcome = await services.reconciler.apply_report(
            job.id, JobStatusReport(state=ProviderState.SUCCESS, images=["https://img/late.png"])
        )
        services.event_bus.unsubscribe(handler)

        assert outcome is not None
        assert outcome.applied is False
        assert outcome.status == JobStatus.FAILED
        stored = await services.generation.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.images is None
        assert stored.refund_status == RefundStatus.ISSUED
        assert received == [JobStatus.FAILED]
        assert await services.ledger.get_balance(funded_account) == 100
        _, total = await services.ledger.get_history(funded_account)
        assert total == 3  # signup bonus + usage + refund

    async def test_concurrent_opposite_outcomes_apply_once(self, services, funded_account):
        job = await _charged_job(services, funded_account)

        outcomes = await asyncio.gather(
            services.reconciler.finalize_success(job.id, ["https://img/1.png"]),
            services.reconciler.finalize_failure(job.id, "expired"),
        )

        applied = [o for o in outcomes if o.applied]
        assert len(applied) == 1
        stored = await services.generation.get_job(job.id)
        assert stored.status == applied[0].status
        if stored.status == JobStatus.COMPLETED:
            assert stored.refund_status == RefundStatus.NONE
            assert await services.ledger.get_balance(funded_account) == 98
        else:
            assert stored.refund_status == RefundStatus.ISSUED
            assert await services.ledger.get_balance(funded_account) == 100
        assert await services.ledger.verify_invariant(funded_account)

    async def test_charge_committed_during_failure_is_refunded(
        self, services, funded_account, monkeypatch
    ):
        """The charge commits after finalize_failure reads the job but before it claims it."""
        async with await services.uow_factory() as uow:
            job = await uow.jobs.add(
                GenerationJob(account_id=funded_account, provider="kie", model="nanobanana", tokens_reserved=2)
            )
        original_claim = GenerationJobRepository.claim_terminal

        async def claim_after_charge(self, job_id, status, **values):
            async with await services.uow_factory() as charge_uow:
                transaction = await services.ledger.apply_debit(
                    charge_uow,
                    funded_account,
                    2,
                    "generate",
                    reference_id=str(job_id),
                    idempotency_key=usage_key(job_id),
                )
                await charge_uow.jobs.mark_processing(
                    job_id, external_task_id="task-1", tokens_charged=2, charge_transaction_id=transaction.id
                )
            return await original_claim(self, job_id, status, **values)

        monkeypatch.setattr(GenerationJobRepository, "claim_terminal", claim_after_charge)

        outcome = await services.reconciler.finalize_failure(job.id, "Lost by provider")

        assert outcome.applied is True
        assert outcome.refund_issued is True
        stored = await services.generation.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.tokens_charged == 2
        assert stored.refund_status == RefundStatus.ISSUED
        assert await services.ledger.get_balance(funded_account) == 100
        assert await services.ledger.verify_invariant(funded_account)

    async def test_uncharged_failure_has_no_refund(self, services, funded_account):
        job = await _uncharged_job(services, funded_account)

        outcome = await services.reconciler.finalize_failure(job.id, "bad input")

        assert outcome.refund_issued is False
        stored = await services.generation.get_job(job.id)
        assert stored.refund_status == RefundStatus.NONE
        assert await services.ledger.get_balance(funded_account) == 100

    async def test_success_without_images_is_failure(self, services, funded_account):
        job = await _charged_job(services, funded_account)

        outcome = await services.reconciler.apply_report(
            job.id, JobStatusReport(state=ProviderState.SUCCESS, images=[])
        )

        assert outcome is not None
        assert outcome.status == JobStatus.FAILED
        stored = await services.generation.get_job(job.id)
        assert stored.error_message == "Provider returned no images"
        assert await services.ledger.get_balance(funded_account) == 100

    async def test_running_report_updates_progress_only(self, services, funded_account):
        job = await _charged_job(services, funded_account)

        outcome = await services.reconciler.apply_report(
            job.id, JobStatusReport(state=ProviderState.RUNNING, progress_percent=40)
        )

        assert outcome is None
        stored = await services.generation.get_job(job.id)
        assert stored.status == JobStatus.PROCESSING
        assert stored.progress_percent == 40


@pytest.mark.asyncio
class TestRefundRetry:
    async def test_failed_refund_stays_pending_and_is_retried(self, services, funded_account, monkeypatch):
        """A refund credit that fails is queued; the retry pass issues it once."""
        job = await _charged_job(services, funded_account)
        original_apply_credit = services.ledger.apply_credit

        async def failing_apply_credit(*args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("database unavailable"))

        monkeypatch.setattr(services.ledger, "apply_credit", failing_apply_credit)
        outcome = await services.reconciler.finalize_failure(job.id, "provider timeout")

        assert outcome.applied is True
        assert outcome.refund_issued is False
        assert outcome.refund_pending is True
        stored = await services.generation.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.refund_status == RefundStatus.PENDING
        assert stored.refund_attempts == 1
        assert await services.ledger.get_balance(funded_account) == 98

        monkeypatch.setattr(services.ledger, "apply_credit", original_apply_credit)
        issued, failed = await services.reconciler.retry_pending_refunds()

        assert (issued, failed) == (1, 0)
        assert await services.ledger.get_balance(funded_account) == 100
        assert await services.reconciler.retry_pending_refunds() == (0, 0)
        assert await services.ledger.verify_invariant(funded_account)

    async def test_issue_refund_not_owed(self, services, funded_account):
        job = await _uncharged_job(services, funded_account)

        assert await services.reconciler.issue_refund(job.id) is False


@pytest.mark.asyncio
class TestEvents:
    async def test_job_resolved_published(self, services, funded_account):
        received = []

        async def handler(event):
            received.append(event)

        services.event_bus.subscribe(handler)
        job = await _charged_job(services, funded_account)

        await services.reconciler.finalize_failure(job.id, "provider timeout")
        await services.reconciler.finalize_failure(job.id, "duplicate")

        assert len(received) == 1
        event = received[0]
        assert event.job_id == job.id
        assert event.account_id == funded_account
        assert event.status == JobStatus.FAILED
        assert event.error_message == "provider timeout"
        assert event.tokens_charged == 2

    async def test_failing_subscriber_does_not_break_reconciliation(self, services, funded_account):
        received = []

        async def broken(event):
            raise RuntimeError("notification backend down")

        async def healthy(event):
            received.append(event.job_id)

        services.event_bus.subscribe(broken)
        services.event_bus.subscribe(healthy)
        job = await _charged_job(services, funded_account)

        outcome = await services.reconciler.finalize_success(job.id, ["https://img/1.png"])

        assert outcome.applied is True
        assert received == [job.id]

        services.event_bus.unsubscribe(broken)
        services.event_bus.unsubscribe(healthy)
