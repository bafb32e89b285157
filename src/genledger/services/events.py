"""In-process event hand-off for resolved generation jobs."""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional
from uuid import UUID

import structlog

from genledger.models.generation_job import JobStatus

logger = structlog.get_logger()


@dataclass(frozen=True)
class JobResolved:
    """A generation job reached a terminal status."""

    job_id: UUID
    account_id: str
    model: str
    status: JobStatus
    images: list[str] = field(default_factory=list)
    error_message: Optional[str] = None
    tokens_charged: int = 0
    refund_pending: bool = False


Subscriber = Callable[[JobResolved], Awaitable[None]]


class EventBus:
    """Fan out JobResolved events to async subscribers.

    Subscribers run in registration order. A subscriber that raises is logged
    and skipped; publishing never fails because of a subscriber.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, handler: Subscriber) -> None:
        self._subscribers.append(handler)

    def unsubscribe(self, handler: Subscriber) -> None:
        if handler in self._subscribers:
            self._subscribers.remove(handler)

    async def publish(self, event: JobResolved) -> None:
        for handler in list(self._subscribers):
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    "events.subscriber_failed",
                    job_id=str(event.job_id),
                    subscriber=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=e,
                )
