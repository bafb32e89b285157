"""AccountBalance repository for the token ledger.

Balance mutations are single conditional UPDATE statements so concurrent requests
for the same account are linearized by the database (row lock on PostgreSQL,
write lock on SQLite) without a read-modify-write window.
"""

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genledger.core.time import utcnow
from genledger.models.account import AccountBalance


class AccountRepository:
    """Repository for AccountBalance entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get(self, account_id: str) -> AccountBalance | None:
        """Retrieve account balance row.

        Always reloads from the database so values changed by the conditional
        UPDATE statements below are never served stale from the identity map.

        Args:
            account_id: External account identifier

        Returns:
            AccountBalance if found, None otherwise
        """
        result = await self.session.execute(
            select(AccountBalance)
            .where(AccountBalance.account_id == account_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add(self, account: AccountBalance) -> AccountBalance:
        """Persist new account to database.

        Args:
            account: AccountBalance entity to persist

        Returns:
            Persisted account

        Raises:
            IntegrityError: If the account already exists (raised on flush)
        """
        self.session.add(account)
        await self.session.flush()
        return account

    async def debit_if_sufficient(self, account_id: str, amount: int) -> int | None:
        """Atomically subtract tokens if the balance covers the amount.

        Query explanation:
        - UPDATE ... SET balance = balance - :amount: Arithmetic happens in the database
        - WHERE balance >= :amount: Compare-and-swap guard, balance never goes negative
        - RETURNING balance: New balance, or no row when the guard failed

        Args:
            account_id: External account identifier
            amount: Positive number of tokens to subtract

        Returns:
            New balance if debited, None if the account is missing or underfunded
        """
        result = await self.session.execute(
            update(AccountBalance)
            .where(
                AccountBalance.account_id == account_id,  # type: ignore[arg-type]
                AccountBalance.balance >= amount,  # type: ignore[arg-type]
            )
            .values(
                balance=AccountBalance.balance - amount,
                total_used=AccountBalance.total_used + amount,
                updated_at=utcnow(),
            )
            .returning(AccountBalance.balance)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()

    async def credit(self, account_id: str, amount: int) -> int | None:
        """Atomically add tokens to an account.

        Args:
            account_id: External account identifier
            amount: Positive number of tokens to add

        Returns:
            New balance, or None if the account does not exist
        """
        result = await self.session.execute(
            update(AccountBalance)
            .where(AccountBalance.account_id == account_id)  # type: ignore[arg-type]
            .values(balance=AccountBalance.balance + amount, updated_at=utcnow())
            .returning(AccountBalance.balance)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()
