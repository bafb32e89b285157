"""Async job tracking: provider polling, webhook callbacks and stale-job sweeps."""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

import structlog

from genledger.core.time import utcnow
from genledger.models.generation_job import JobStatus
from genledger.services.exceptions import JobTimeoutError, ProviderError
from genledger.services.gateway import JobSubmissionGateway
from genledger.services.providers.base import JobStatusReport
from genledger.services.reconciliation import Reconciler, ReconcileOutcome

logger = structlog.get_logger()


@dataclass
class SweepResult:
    """Counts from one stale-job sweep."""

    checked: int = 0
    resolved: int = 0
    dead_lettered: int = 0
    errors: int = 0


class JobTracker:
    """Drives accepted async jobs to a terminal state.

    Outcomes arrive either from polling (schedule/track_job) or from provider
    callbacks (on_callback). Both paths end in the Reconciler, whose status
    compare-and-swap lets the first terminal outcome win.
    """

    def __init__(
        self,
        uow_factory,
        gateway: JobSubmissionGateway,
        reconciler: Reconciler,
        max_attempts: int = 60,
        interval_seconds: float = 2.0,
        backoff_factor: float = 1.0,
        max_interval_seconds: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize tracker.

        Args:
            uow_factory: Factory returning UnitOfWork instances
            gateway: Gateway used to poll providers
            reconciler: Applies terminal reports
            max_attempts: Polls before giving up on a job (job stays processing)
            interval_seconds: Delay after the first non-terminal poll
            backoff_factor: Multiplier applied to the delay after each poll (1.0 = fixed)
            max_interval_seconds: Upper bound on the delay between polls
            sleep: Awaitable sleep (tests inject a no-op)
        """
        self.uow_factory = uow_factory
        self.gateway = gateway
        self.reconciler = reconciler
        self.max_attempts = max_attempts
        self.interval_seconds = interval_seconds
        self.backoff_factor = backoff_factor
        self.max_interval_seconds = max_interval_seconds
        self._sleep = sleep
        self._inflight: dict[UUID, asyncio.Task] = {}

    async def poll_once(self, external_task_id: str, provider: str = "kie") -> JobStatusReport:
        """Query the provider once for the task state.

        Raises:
            ProviderError: If the status request fails
        """
        return await self.gateway.poll(provider, external_task_id)

    async def wait_for_terminal(
        self,
        external_task_id: str,
        max_attempts: Optional[int] = None,
        interval_seconds: Optional[float] = None,
        provider: str = "kie",
        on_poll: Optional[Callable[[JobStatusReport], Awaitable[None]]] = None,
    ) -> JobStatusReport:
        """Poll until the provider reports success or failure.

        A failed poll consumes an attempt and is logged; polling continues.

        Args:
            external_task_id: Provider task id
            max_attempts: Poll budget (default: tracker setting)
            interval_seconds: Initial delay between polls (default: tracker setting)
            provider: Provider name
            on_poll: Called with every non-terminal report (progress bookkeeping)

        Returns:
            The terminal JobStatusReport

        Raises:
            JobTimeoutError: If no terminal state was seen within max_attempts
        """
        attempts = max_attempts if max_attempts is not None else self.max_attempts
        delay = interval_seconds if interval_seconds is not None else self.interval_seconds

        for attempt in range(1, attempts + 1):
            try:
                report = await self.poll_once(external_task_id, provider)
            except ProviderError as e:
                logger.warning(
                    "job.poll_failed",
                    external_task_id=external_task_id,
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            else:
                logger.debug(
                    "job.polled",
                    external_task_id=external_task_id,
                    attempt=attempt,
                    state=report.state.value,
                )
                if report.is_terminal:
                    return report
                if on_poll is not None:
                    await on_poll(report)

            if attempt < attempts:
                await self._sleep(delay)
                delay = min(delay * self.backoff_factor, self.max_interval_seconds)

        raise JobTimeoutError(external_task_id, attempts)

    async def track_job(self, job_id: UUID) -> Optional[ReconcileOutcome]:
        """Poll one job to a terminal state and reconcile it.

        Returns:
            ReconcileOutcome, or None if the job needs no tracking or timed out
        """
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
        if job is None or job.is_terminal or not job.external_task_id:
            return None

        async def record_poll(report: JobStatusReport) -> None:
            async with await self.uow_factory() as uow:
                await uow.jobs.touch_polled(job_id)
                if report.progress_percent is not None:
                    await uow.jobs.update_progress(job_id, report.progress_percent)

        try:
            report = await self.wait_for_terminal(
                job.external_task_id, provider=job.provider, on_poll=record_poll
            )
        except JobTimeoutError as e:
            logger.warning(
                "job.poll_timeout",
                job_id=str(job_id),
                external_task_id=job.external_task_id,
                attempts=e.attempts,
            )
            return None

        return await self.reconciler.apply_report(job_id, report)

    def schedule(self, job_id: UUID) -> None:
        """Track a job in the background; a job already being tracked is skipped."""
        if job_id in self._inflight:
            return
        task = asyncio.create_task(self._run(job_id))
        self._inflight[job_id] = task

    async def _run(self, job_id: UUID) -> None:
        try:
            await self.track_job(job_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "job.tracking_failed",
                job_id=str(job_id),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=e,
            )
        finally:
            self._inflight.pop(job_id, None)

    async def resume_processing(self, limit: int = 50) -> int:
        """Schedule tracking for processing jobs left over from a previous process.

        Returns:
            Number of jobs scheduled
        """
        async with await self.uow_factory() as uow:
            jobs = await uow.jobs.get_stale_processing(utcnow(), limit)
        for job in jobs:
            self.schedule(job.id)
        if jobs:
            logger.info("tracker.resumed", count=len(jobs))
        return len(jobs)

    @property
    def inflight(self) -> set[UUID]:
        return set(self._inflight)

    async def drain(self) -> None:
        """Wait for all scheduled tracking tasks to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding tracking tasks (jobs stay processing for the sweeper)."""
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
        logger.info("tracker.shutdown", cancelled=len(tasks))

    async def on_callback(
        self, external_task_id: str, payload: dict[str, Any], provider: str = "kie"
    ) -> Optional[ReconcileOutcome]:
        """Handle a provider webhook for a task.

        Returns:
            ReconcileOutcome for terminal callbacks on known jobs, None otherwise
            (unmatched task ids, progress updates)
        """
        report = self.gateway.parse_callback(provider, payload)

        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_external_task_id(external_task_id)
        if job is None:
            logger.warning(
                "callback.unmatched",
                external_task_id=external_task_id,
                provider=provider,
                state=report.state.value,
            )
            return None

        if not report.is_terminal:
            if report.progress_percent is not None and not job.is_terminal:
                async with await self.uow_factory() as uow:
                    await uow.jobs.update_progress(job.id, report.progress_percent)
                logger.debug(
                    "callback.progress",
                    job_id=str(job.id),
                    progress_percent=report.progress_percent,
                )
            return None

        logger.info(
            "callback.received",
            job_id=str(job.id),
            external_task_id=external_task_id,
            state=report.state.value,
        )
        return await self.reconciler.apply_report(job.id, report)

    async def sweep_stale(
        self,
        stale_seconds: float,
        dead_letter_after_seconds: float,
        limit: int = 50,
    ) -> SweepResult:
        """Re-poll processing jobs nobody has looked at recently.

        Terminal reports are reconciled. Jobs older than dead_letter_after_seconds
        that are still not terminal are flagged for operator follow-up; they stay
        reconcilable by callback or the reconcile CLI.

        Args:
            stale_seconds: Jobs last polled longer ago than this are re-polled
            dead_letter_after_seconds: Age after which a non-terminal job is flagged
            limit: Maximum number of jobs per sweep

        Returns:
            SweepResult counts
        """
        now = utcnow()
        async with await self.uow_factory() as uow:
            jobs = await uow.jobs.get_stale_processing(now - timedelta(seconds=stale_seconds), limit)

        result = SweepResult()
        dead_letter_cutoff = now - timedelta(seconds=dead_letter_after_seconds)
        for job in jobs:
            if job.id in self._inflight:
                continue
            result.checked += 1

            report: Optional[JobStatusReport] = None
            try:
                report = await self.poll_once(job.external_task_id or "", job.provider)
            except ProviderError as e:
                result.errors += 1
                logger.warning(
                    "job.stale_poll_failed",
                    job_id=str(job.id),
                    external_task_id=job.external_task_id,
                    error=str(e),
                )

            async with await self.uow_factory() as uow:
                await uow.jobs.touch_polled(job.id)

            if report is not None and report.is_terminal:
                outcome = await self.reconciler.apply_report(job.id, report)
                if outcome is not None and outcome.applied:
                    result.resolved += 1
                continue

            async with await self.uow_factory() as uow:
                flagged = await uow.jobs.mark_dead_lettered(job.id, created_before=dead_letter_cutoff)
            if flagged:
                result.dead_lettered += 1
                logger.error(
                    "job.dead_lettered",
                    job_id=str(job.id),
                    account_id=job.account_id,
                    external_task_id=job.external_task_id,
                    status=JobStatus.PROCESSING.value,
                    tokens_charged=job.tokens_charged,
                )

        if result.checked:
            logger.info(
                "job.stale_sweep_completed",
                checked=result.checked,
                resolved=result.resolved,
                dead_lettered=result.dead_lettered,
                errors=result.errors,
            )
        return result
