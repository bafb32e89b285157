"""External generation providers."""

from genledger.services.providers.base import (
    AsyncResult,
    JobRequest,
    JobStatusReport,
    ProviderClient,
    ProviderState,
    SyncResult,
    normalize_state,
)
from genledger.services.providers.fal_client import FalClient
from genledger.services.providers.kie_client import KieClient

__all__ = [
    "AsyncResult",
    "FalClient",
    "JobRequest",
    "JobStatusReport",
    "KieClient",
    "ProviderClient",
    "ProviderState",
    "SyncResult",
    "normalize_state",
]
