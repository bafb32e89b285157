"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from genledger.api.routes import accounts, generations, tokens, webhooks
from genledger.core.config import Settings, configure_logging
from genledger.core.database import setup_db_session
from genledger.services.container import Services, build_services
from genledger.uow import create_uow_factory
from genledger.workers.refund_retry_worker import run_refund_retry_worker
from genledger.workers.stale_job_worker import run_stale_job_worker

logger = structlog.get_logger()

WorkerFunc = Callable[[Services, Settings], Awaitable[Any]]


class ResilientWorker:
    """Background worker loop restarted after a fixed delay when it crashes.

    Holds the handle of the currently running task so stop() also reaches
    instances started by a restart.
    """

    RESTART_DELAY = 1.0

    def __init__(self, coro_func: WorkerFunc, services: Services, settings: Settings, name: str):
        """Initialize worker.

        Args:
            coro_func: Worker coroutine function (e.g., run_refund_retry_worker)
            services: Wired application services
            settings: Application settings
            name: Human-readable worker name for logging
        """
        self.coro_func = coro_func
        self.services = services
        self.settings = settings
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._stopping = False

    def start(self) -> None:
        self._task = asyncio.create_task(self.coro_func(self.services, self.settings))
        self._task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        if self._stopping or task.cancelled():
            logger.info("worker.shutdown_complete", worker=self.name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=self.name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=self.RESTART_DELAY,
                exc_info=exc,
            )
        else:
            # Worker loops never return on their own
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=self.name,
                retry_in_seconds=self.RESTART_DELAY,
            )
        self._restart_task = asyncio.create_task(self._restart())

    async def _restart(self) -> None:
        await asyncio.sleep(self.RESTART_DELAY)
        if self._stopping:
            return
        logger.info("worker.restarting", worker=self.name)
        self.start()

    async def stop(self) -> None:
        """Cancel the running task and any pending restart."""
        self._stopping = True
        tasks = [t for t in (self._task, self._restart_task) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, wire services, resume tracking, start workers
    - Shutdown: Stop workers and tracking tasks, close provider clients

    Jobs left processing by a previous process are re-scheduled for polling, and
    refunds left pending are picked up by the first refund worker iteration.
    """
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    services = build_services(settings, uow_factory)

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.services = services

    try:
        await services.tracker.resume_processing(limit=settings.worker_batch_size)
    except Exception as e:
        # Stale sweeper picks these jobs up later
        logger.error("startup.resume_failed", error=str(e), error_type=type(e).__name__)

    workers = [
        ResilientWorker(run_refund_retry_worker, services, settings, "refund_retry"),
        ResilientWorker(run_stale_job_worker, services, settings, "stale_job"),
    ]
    for worker in workers:
        worker.start()

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        charge_policy=settings.charge_policy,
    )

    yield

    logger.info("application.shutdown")
    await asyncio.gather(*(worker.stop() for worker in workers))
    await services.close()
    await session_factory.kw["bind"].dispose()


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="genledger API",
        description="Token ledger and generation job reconciliation",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(tokens.router)
    app.include_router(accounts.router)
    app.include_router(generations.router)
    app.include_router(webhooks.router)

    @app.get("/health")
    async def health_check(response: Response):
        """Check database connectivity.

        Returns:
            200: {"status": "healthy"}
            503: {"status": "unhealthy", "error": {...}}
        """
        try:
            async with app.state.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("health_check.failed", error=str(e), error_type=type(e).__name__)
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {"status": "unhealthy", "error": {"type": type(e).__name__, "message": str(e)}}

        return {"status": "healthy"}

    return app


# Create app instance for uvicorn
app = create_app()
