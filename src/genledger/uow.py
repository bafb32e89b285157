"""Unit of Work pattern for genledger.

Provides transaction management with automatic commit/rollback and access to all repositories.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genledger.repositories.account import AccountRepository
from genledger.repositories.generation_job import GenerationJobRepository
from genledger.repositories.transaction import TokenTransactionRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Unit of Work pattern implementation.

    One UnitOfWork is one database transaction. A balance change and the ledger
    row that explains it are always written through the same UnitOfWork.

    Example:
        async with await uow_factory() as uow:
            new_balance = await uow.accounts.debit_if_sufficient(account_id, 4)
            await uow.transactions.add(transaction)
            # Automatically commits on successful exit
            # Automatically rolls back on exception
    """

    def __init__(self, session: AsyncSession):
        """Initialize UnitOfWork with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

        self.accounts = AccountRepository(session)
        self.transactions = TokenTransactionRepository(session)
        self.jobs = GenerationJobRepository(session)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context manager with automatic commit/rollback.

        Returns:
            False: Always re-raise exceptions after rollback
        """
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed")
            else:
                await self.session.rollback()
                logger.debug("transaction.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        return False


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]):
    """Create a factory function that produces UnitOfWork instances.

    Args:
        session_factory: SQLAlchemy async session factory

    Returns:
        Callable that creates UnitOfWork instances from new sessions

    Example:
        session_factory = setup_db_session(db_url)
        uow_factory = create_uow_factory(session_factory)

        async with await uow_factory() as uow:
            await uow.accounts.get(account_id)
    """

    async def _create_uow():
        session = session_factory()
        return UnitOfWork(session)

    return _create_uow
