"""Service wiring shared by the API lifespan, workers and the reconcile CLI."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

from genledger.core.config import Settings
from genledger.services.events import EventBus
from genledger.services.gateway import GenerationService, JobSubmissionGateway
from genledger.services.ledger import TokenLedgerService
from genledger.services.providers.base import ProviderClient
from genledger.services.providers.fal_client import FalClient
from genledger.services.providers.kie_client import KieClient
from genledger.services.reconciliation import Reconciler
from genledger.services.tracker import JobTracker


@dataclass
class Services:
    """Application services bound to one UnitOfWork factory."""

    uow_factory: Any
    event_bus: EventBus
    ledger: TokenLedgerService
    gateway: JobSubmissionGateway
    reconciler: Reconciler
    tracker: JobTracker
    generation: GenerationService

    async def close(self) -> None:
        await self.tracker.shutdown()
        await self.gateway.close()


def create_providers(settings: Settings) -> dict[str, ProviderClient]:
    """Create provider clients from settings."""
    return {
        "kie": KieClient(
            api_key=settings.kie_api_key,
            base_url=settings.kie_base_url,
            callback_url=settings.kie_callback_url,
            timeout=settings.provider_timeout_seconds,
        ),
        "fal": FalClient(
            api_key=settings.fal_api_key,
            base_url=settings.fal_base_url,
            timeout=max(settings.provider_timeout_seconds, 120.0),
        ),
    }


def build_services(
    settings: Settings,
    uow_factory,
    providers: Optional[Mapping[str, ProviderClient]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Services:
    """Wire ledger, gateway, reconciler, tracker and generation services.

    Args:
        settings: Application settings
        uow_factory: Factory returning UnitOfWork instances
        providers: Provider clients by name (default: built from settings)
        sleep: Sleep used between polls (tests inject a no-op)

    Returns:
        Services container
    """
    event_bus = EventBus()
    ledger = TokenLedgerService(uow_factory, signup_bonus=settings.signup_bonus_tokens)
    gateway = JobSubmissionGateway(providers if providers is not None else create_providers(settings))
    reconciler = Reconciler(uow_factory, ledger, event_bus)
    tracker = JobTracker(
        uow_factory,
        gateway,
        reconciler,
        max_attempts=settings.poll_max_attempts,
        interval_seconds=settings.poll_interval_seconds,
        backoff_factor=settings.poll_backoff_factor,
        max_interval_seconds=settings.poll_max_interval_seconds,
        sleep=sleep,
    )
    generation = GenerationService(
        uow_factory,
        ledger,
        gateway,
        reconciler,
        tracker=tracker,
        charge_policy=settings.charge_policy,
        max_outputs=settings.max_outputs_per_request,
    )
    return Services(
        uow_factory=uow_factory,
        event_bus=event_bus,
        ledger=ledger,
        gateway=gateway,
        reconciler=reconciler,
        tracker=tracker,
        generation=generation,
    )
