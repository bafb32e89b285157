"""Refund retry worker.

Re-issues refunds for failed jobs whose refund credit did not commit
(refund_status='pending'). The pending marker is written in the same statement
that fails the job, so refunds survive crashes and restarts.
"""

import asyncio

import structlog

from genledger.core.config import Settings
from genledger.services.container import Services

logger = structlog.get_logger()


async def process_batch(services: Services, settings: Settings) -> tuple[int, int]:
    """Retry one batch of pending refunds.

    Args:
        services: Wired application services
        settings: Application settings (batch size)

    Returns:
        Tuple of (issued, failed) counts
    """
    issued, failed = await services.reconciler.retry_pending_refunds(limit=settings.worker_batch_size)
    if issued or failed:
        logger.info("refund_retry.batch_completed", issued=issued, failed=failed)
    return issued, failed


async def run_refund_retry_worker(services: Services, settings: Settings) -> None:
    """Main worker loop for refund retries.

    The first iteration runs immediately, so refunds left pending by a previous
    process are issued at startup.

    Args:
        services: Wired application services
        settings: Application settings (retry interval, batch size)
    """
    logger.info(
        "worker.started",
        worker="refund_retry",
        interval=settings.refund_retry_interval_seconds,
        batch_size=settings.worker_batch_size,
    )

    try:
        while True:
            try:
                await process_batch(services, settings)
                await asyncio.sleep(settings.refund_retry_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    worker="refund_retry",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker="refund_retry")
        raise
