"""Repository layer for genledger.

Provides data access abstractions for accounts, ledger transactions and
generation jobs. Each repository is self-contained and bound to one session.
"""

from genledger.repositories.account import AccountRepository
from genledger.repositories.generation_job import GenerationJobRepository
from genledger.repositories.transaction import TokenTransactionRepository

__all__ = [
    "AccountRepository",
    "TokenTransactionRepository",
    "GenerationJobRepository",
]
