"""Stale job sweeper.

Re-polls processing jobs whose tracking stopped (poll timeout, process restart,
lost callback) and flags jobs that stay unresolved past the dead-letter age.
"""

import asyncio

import structlog

from genledger.core.config import Settings
from genledger.services.container import Services
from genledger.services.tracker import SweepResult

logger = structlog.get_logger()


async def process_batch(services: Services, settings: Settings) -> SweepResult:
    return await services.tracker.sweep_stale(
        stale_seconds=settings.stale_job_seconds,
        dead_letter_after_seconds=settings.dead_letter_after_seconds,
        limit=settings.worker_batch_size,
    )


async def run_stale_job_worker(services: Services, settings: Settings) -> None:
    """Main worker loop for the stale job sweep.

    Args:
        services: Wired application services
        settings: Application settings (sweep interval, staleness thresholds)
    """
    logger.info(
        "worker.started",
        worker="stale_job",
        interval=settings.stale_sweep_interval_seconds,
        stale_seconds=settings.stale_job_seconds,
        dead_letter_after_seconds=settings.dead_letter_after_seconds,
    )

    try:
        while True:
            try:
                await process_batch(services, settings)
                await asyncio.sleep(settings.stale_sweep_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    worker="stale_job",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker="stale_job")
        raise
