"""CLI command for reconciling stuck generation jobs.

Usage:
    python -m genledger.cli.reconcile [OPTIONS]

Examples:
    # Re-poll one job and apply its terminal outcome
    python -m genledger.cli.reconcile --job-id 3f0c...

    # Force-fail a job the provider lost (refunds its charge)
    python -m genledger.cli.reconcile --job-id 3f0c... --fail-reason "Lost by provider"

    # One stale-job sweep plus one refund retry pass
    python -m genledger.cli.reconcile --sweep

    # Show what would happen without writing
    python -m genledger.cli.reconcile --sweep --dry-run
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from datetime import timedelta
from typing import Optional, Sequence
from uuid import UUID

import structlog

from genledger.core.config import Settings, configure_logging
from genledger.core.database import setup_db_session
from genledger.core.time import utcnow
from genledger.models.generation_job import RefundStatus
from genledger.services.container import Services, build_services
from genledger.services.exceptions import GenLedgerError, JobNotFound, ProviderError, RefundFailure
from genledger.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Reconcile stuck generation jobs with their provider and the token ledger",
    )

    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--job-id", type=UUID, help="Local job id to re-poll or force-fail")
    target.add_argument(
        "--sweep",
        action="store_true",
        help="Run one stale-job sweep and one refund retry pass",
    )

    parser.add_argument(
        "--fail-reason",
        help="Mark the job failed with this reason instead of polling (requires --job-id)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report provider state and pending work without database writes",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    args = parser.parse_args(argv)
    if args.fail_reason and not args.job_id:
        parser.error("--fail-reason requires --job-id")
    return args


async def reconcile_job(
    services: Services,
    job_id: UUID,
    fail_reason: Optional[str] = None,
    dry_run: bool = False,
) -> int:
    """Re-poll or force-fail one job.

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    try:
        job = await services.generation.get_job(job_id)
    except JobNotFound:
        print(f"Error: job {job_id} not found", file=sys.stderr)
        return 1

    print(f"Job {job.id}: status={job.status.value} provider={job.provider} task={job.external_task_id}")

    if job.is_terminal:
        print(f"Job is already {job.status.value}")
        if job.refund_status == RefundStatus.PENDING and not dry_run:
            try:
                issued = await services.reconciler.issue_refund(job.id)
            except RefundFailure as e:
                print(f"Error: refund still failing: {e}", file=sys.stderr)
                return 1
            print(f"Pending refund issued: {issued}")
        return 0

    if fail_reason:
        if dry_run:
            print(f"[DRY RUN] Would mark job failed: {fail_reason}")
            return 0
        outcome = await services.reconciler.finalize_failure(job.id, fail_reason)
        print(f"Job marked {outcome.status.value} (refund issued: {outcome.refund_issued})")
        return 0

    if not job.external_task_id:
        print("Error: job has no provider task id; use --fail-reason to resolve it", file=sys.stderr)
        return 1

    try:
        report = await services.tracker.poll_once(job.external_task_id, job.provider)
    except ProviderError as e:
        print(f"Error: provider poll failed: {e}", file=sys.stderr)
        return 1

    print(f"Provider state: {report.state.value}")
    if dry_run:
        print("[DRY RUN] No changes were persisted to database")
        return 0

    outcome = await services.reconciler.apply_report(job.id, report)
    if outcome is None:
        print("Job still running at the provider; left processing")
    else:
        print(f"Job {outcome.status.value} (applied: {outcome.applied})")
    return 0


async def run_sweep(services: Services, settings: Settings, dry_run: bool = False) -> int:
    """Run one stale sweep and one refund retry pass.

    Returns:
        Exit code: 0 (success), 1 (refunds still failing)
    """
    if dry_run:
        cutoff = utcnow() - timedelta(seconds=settings.stale_job_seconds)
        async with await services.uow_factory() as uow:
            stale = await uow.jobs.get_stale_processing(cutoff, settings.worker_batch_size)
            refunds = await uow.jobs.get_pending_refunds(settings.worker_batch_size)
        print(f"Stale processing jobs: {len(stale)}")
        for job in stale:
            print(f"  - {job.id} task={job.external_task_id} created={job.created_at}")
        print(f"Pending refunds: {len(refunds)}")
        for job in refunds:
            print(f"  - {job.id} account={job.account_id} tokens={job.tokens_charged}")
        print("[DRY RUN] No changes were persisted to database")
        return 0

    sweep = await services.tracker.sweep_stale(
        stale_seconds=settings.stale_job_seconds,
        dead_letter_after_seconds=settings.dead_letter_after_seconds,
        limit=settings.worker_batch_size,
    )
    issued, failed = await services.reconciler.retry_pending_refunds(settings.worker_batch_size)

    print("\n" + "=" * 60)
    print("Reconciliation Summary")
    print("=" * 60)
    print(f"Stale jobs checked: {sweep.checked}")
    print(f"Jobs resolved: {sweep.resolved}")
    print(f"Jobs dead-lettered: {sweep.dead_lettered}")
    print(f"Poll errors: {sweep.errors}")
    print(f"Refunds issued: {issued}")
    print(f"Refunds failed: {failed}")
    print("=" * 60 + "\n")

    return 1 if failed else 0


async def async_main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info("cli.started", job_id=str(args.job_id) if args.job_id else None, sweep=args.sweep)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    services = build_services(settings, create_uow_factory(session_factory))

    try:
        if args.sweep:
            return await run_sweep(services, settings, dry_run=args.dry_run)
        return await reconcile_job(services, args.job_id, args.fail_reason, dry_run=args.dry_run)

    except GenLedgerError as e:
        logger.error("cli.reconcile_error", error=str(e), error_type=type(e).__name__)
        print(f"\nError: {e}", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nReconciliation interrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error("cli.unexpected_error", error=str(e), error_type=type(e).__name__)
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await services.close()
        await session_factory.kw["bind"].dispose()


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
