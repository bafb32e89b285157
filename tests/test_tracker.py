"""Job tracker tests.

Tests focus on how async outcomes reach the reconciler:
- Polling with fixed interval or exponential backoff, timeouts, poll errors
- Webhook callbacks: progress, terminal, duplicate, unmatched
- Stale sweeps and dead-lettering
- Background tracking lifecycle (resume, shutdown)
"""

import asyncio
import json

import pytest

from genledger.models.generation_job import GenerationJob, JobStatus
from genledger.services.exceptions import JobTimeoutError, TransientProviderError
from genledger.services.ledger import usage_key
from genledger.services.providers.base import JobStatusReport, ProviderState
from genledger.services.tracker import JobTracker


async def _processing_job(services, account_id: str, task_id: str = "task-1") -> GenerationJob:
    """Create a charged processing job without scheduling background tracking."""
    async with await services.uow_factory() as uow:
        job = await uow.jobs.add(
            GenerationJob(account_id=account_id, provider="kie", model="nanobanana", tokens_reserved=2)
        )
    async with await services.uow_factory() as uow:
        transaction = await services.ledger.apply_debit(
            uow, account_id, 2, "generate", reference_id=str(job.id), idempotency_key=usage_key(job.id)
        )
        await uow.jobs.mark_processing(
            job.id, external_task_id=task_id, tokens_charged=2, charge_transaction_id=transaction.id
        )
    return job


def _kie_callback(task_id: str, state: str, **data) -> dict:
    return {"code": 200, "msg": "success", "data": {"taskId": task_id, "state": state, **data}}


@pytest.mark.asyncio
class TestWaitForTerminal:
    async def test_exponential_backoff_capped(self, services_factory, kie_provider, sleep_recorder):
        services = services_factory(
            poll_max_attempts=6,
            poll_interval_seconds=1.0,
            poll_backoff_factor=2.0,
            poll_max_interval_seconds=5.0,
        )

        with pytest.raises(JobTimeoutError) as exc_info:
            await services.tracker.wait_for_terminal("task-1")

        assert exc_info.value.attempts == 6
        assert len(kie_provider.polled) == 6
        assert sleep_recorder.delays == [1.0, 2.0, 4.0, 5.0, 5.0]

    async def test_fixed_interval_by_default(self, services, kie_provider, sleep_recorder):
        kie_provider.status_reports = [
            JobStatusReport(state=ProviderState.PENDING),
            JobStatusReport(state=ProviderState.RUNNING),
            JobStatusReport(state=ProviderState.SUCCESS, images=["https://img/1.png"]),
        ]

        report = await services.tracker.wait_for_terminal("task-1", interval_seconds=3.0)

        assert report.state == ProviderState.SUCCESS
        assert sleep_recorder.delays == [3.0, 3.0]

    async def test_poll_error_consumes_attempt_and_continues(self, services, kie_provider):
        kie_provider.status_reports = [
            TransientProviderError("kie request timeout", provider="kie"),
            JobStatusReport(state=ProviderState.FAIL, error_message="bad input"),
        ]

        report = await services.tracker.wait_for_terminal("task-1", max_attempts=3)

        assert report.state == ProviderState.FAIL
        assert kie_provider.polled == ["task-1", "task-1"]

    async def test_on_poll_sees_non_terminal_reports(self, services, kie_provider):
        kie_provider.status_reports = [
            JobStatusReport(state=ProviderState.RUNNING, progress_percent=30),
            JobStatusReport(state=ProviderState.SUCCESS, images=["https://img/1.png"]),
        ]
        seen = []

        async def on_poll(report):
            seen.append(report.progress_percent)

        await services.tracker.wait_for_terminal("task-1", on_poll=on_poll)

        assert seen == [30]


@pytest.mark.asyncio
class TestTrackJob:
    async def test_timeout_leaves_job_processing(self, services, funded_account, kie_provider):
        job = await _processing_job(services, funded_account)
        kie_provider.status_reports = [JobStatusReport(state=ProviderState.RUNNING, progress_percent=60)]

        outcome = await services.tracker.track_job(job.id)

        assert outcome is None
        stored = await services.generation.get_job(job.id)
        assert stored.status == JobStatus.PROCESSING
        assert stored.progress_percent == 60
        assert stored.last_polled_at is not None
        assert await services.ledger.get_balance(funded_account) == 98

    async def test_terminal_job_not_polled(self, services, funded_account, kie_provider):
        job = await _processing_job(services, funded_account)
        await services.reconciler.finalize_success(job.id, ["https://img/1.png"])

        assert await services.tracker.track_job(job.id) is None
        assert kie_provider.polled == []

    async def test_resume_processing_schedules_and_completes(self, services, funded_account, kie_provider):
        job = await _processing_job(services, funded_account)
        kie_provider.status_reports = [
            JobStatusReport(state=ProviderState.SUCCESS, images=["https://img/1.png"])
        ]

        scheduled = await services.tracker.resume_processing()
        await services.tracker.drain()

        assert scheduled == 1
        stored = await services.generation.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED

    async def test_schedule_dedupes_and_shutdown_cancels(self, services, funded_account, kie_provider):
        job = await _processing_job(services, funded_account)
        never = asyncio.Event()

        async def blocking_sleep(seconds):
            await never.wait()

        tracker = JobTracker(
            services.uow_factory,
            services.gateway,
            services.reconciler,
            max_attempts=3,
            interval_seconds=1.0,
            sleep=blocking_sleep,
        )

        tracker.schedule(job.id)
        tracker.schedule(job.id)
        assert tracker.inflight == {job.id}

        for _ in range(20):
            if kie_provider.polled:
                break
            await asyncio.sleep(0.01)

        await tracker.shutdown()

        assert tracker.inflight == set()
        assert len(kie_provider.polled) == 1
        stored = await services.generation.get_job(job.id)
        assert stored.status == JobStatus.PROCESSING


@pytest.mark.asyncio
class TestOnCallback:
    async def test_success_callback_completes_job(self, services, funded_account):
        job = await _processing_job(services, funded_account)
        payload = _kie_callback(
            "task-1", "success", resultJson=json.dumps({"resultUrls": ["https://img/cb.png"]})
        )

        outcome = await services.tracker.on_callback("task-1", payload)

        assert outcome is not None and outcome.applied is True
        stored = await services.generation.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.images == ["https://img/cb.png"]
        assert stored.provider_metadata == payload

    async def test_success_callback_then_stale_poll_is_noop(self, services, funded_account, kie_provider):
        """Scenario: callback success, then a poll reports success for the same task."""
        job = await _processing_job(services, funded_account)
        payload = _kie_callback("task-1", "success", resultUrls=["https://img/cb.png"])
        kie_provider.status_reports = [
            JobStatusReport(state=ProviderState.SUCCESS, images=["https://img/poll.png"])
        ]

        await services.tracker.on_callback("task-1", payload)
        report = await services.tracker.poll_once("task-1")
        late = await services.reconciler.apply_report(job.id, report)

        assert late is not None and late.applied is False
        stored = await services.generation.get_job(job.id)
        assert stored.images == ["https://img/cb.png"]
        _, transactions = await services.ledger.get_history(funded_account)
        assert transactions == 2

    async def test_duplicate_fail_callback_refunds_once(self, services, funded_account):
        """Scenario: fail callback refunds; a duplicate fail callback changes nothing."""
        job = await _processing_job(services, funded_account)
        payload = _kie_callback("task-1", "fail", failMsg="Content moderation")

        first = await services.tracker.on_callback("task-1", payload)
        assert await services.ledger.get_balance(funded_account) == 100
        second = await services.tracker.on_callback("task-1", payload)

        assert first is not None and first.refund_issued is True
        assert second is not None and second.applied is False
        assert await services.ledger.get_balance(funded_account) == 100
        stored = await services.generation.get_job(job.id)
        assert stored.error_message == "Content moderation"

    async def test_progress_callback_updates_progress(self, services, funded_account):
        job = await _processing_job(services, funded_account)

        outcome = await services.tracker.on_callback(
            "task-1", _kie_callback("task-1", "generating", progress=45)
        )

        assert outcome is None
        stored = await services.generation.get_job(job.id)
        assert stored.status == JobStatus.PROCESSING
        assert stored.progress_percent == 45

    async def test_unmatched_callback_ignored(self, services, funded_account):
        outcome = await services.tracker.on_callback(
            "unknown-task", _kie_callback("unknown-task", "success", resultUrls=["https://img/x.png"])
        )

        assert outcome is None
        assert await services.ledger.get_balance(funded_account) == 100

    async def test_callback_type_wins_over_state(self, services, funded_account):
        job = await _processing_job(services, funded_account)
        payload = _kie_callback("task-1", "generating", callbackType="task_failed", failMsg="timeout")

        outcome = await services.tracker.on_callback("task-1", payload)

        assert outcome is not None
        assert outcome.status == JobStatus.FAILED
        stored = await services.generation.get_job(job.id)
        assert stored.status == JobStatus.FAILED


@pytest.mark.asyncio
class TestSweepStale:
    async def test_sweep_resolves_terminal_jobs(self, services, funded_account, kie_provider):
        job = await _processing_job(services, funded_account)
        kie_provider.status_reports = [
            JobStatusReport(state=ProviderState.SUCCESS, images=["https://img/1.png"])
        ]

        result = await services.tracker.sweep_stale(stale_seconds=0, dead_letter_after_seconds=3600)

        assert (result.checked, result.resolved, result.dead_lettered, result.errors) == (1, 1, 0, 0)
        stored = await services.generation.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED

    async def test_sweep_dead_letters_old_unresolved_jobs(self, services, funded_account, kie_provider):
        job = await _processing_job(services, funded_account)

        result = await services.tracker.sweep_stale(stale_seconds=0, dead_letter_after_seconds=0)

        assert result.dead_lettered == 1
        stored = await services.generation.get_job(job.id)
        assert stored.status == JobStatus.PROCESSING
        assert stored.dead_lettered_at is not None

        # Flagged jobs leave the sweep set but still accept a callback
        again = await services.tracker.sweep_stale(stale_seconds=0, dead_letter_after_seconds=0)
        assert again.checked == 0
        outcome = await services.tracker.on_callback("task-1", _kie_callback("task-1", "fail"))
        assert outcome is not None and outcome.refund_issued is True

    async def test_sweep_counts_poll_errors(self, services, funded_account, kie_provider):
        await _processing_job(services, funded_account)
        kie_provider.status_reports = [TransientProviderError("kie error 503", provider="kie")]

        result = await services.tracker.sweep_stale(stale_seconds=0, dead_letter_after_seconds=3600)

        assert result.errors == 1
        assert result.resolved == 0

    async def test_recently_polled_jobs_are_skipped(self, services, funded_account, kie_provider):
        job = await _processing_job(services, funded_account)
        async with await services.uow_factory() as uow:
            await uow.jobs.touch_polled(job.id)

        result = await services.tracker.sweep_stale(stale_seconds=600, dead_letter_after_seconds=3600)

        assert result.checked == 0
        assert kie_provider.polled == []
