"""TokenTransaction repository for the token ledger.

Transactions are append-only: there is no update or delete method.
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from genledger.models.transaction import TokenTransaction


class TokenTransactionRepository:
    """Repository for TokenTransaction entities."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, transaction: TokenTransaction) -> TokenTransaction:
        """Persist new transaction to database.

        Raises:
            IntegrityError: If idempotency_key was already used (raised on flush)
        """
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    async def get_by_idempotency_key(self, key: str) -> TokenTransaction | None:
        result = await self.session.execute(
            select(TokenTransaction).where(TokenTransaction.idempotency_key == key)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def list_by_account(
        self, account_id: str, limit: int = 50, offset: int = 0
    ) -> list[TokenTransaction]:
        """Retrieve an account's transactions with pagination.

        Args:
            account_id: External account identifier
            limit: Maximum number of transactions to return (default: 50)
            offset: Number of transactions to skip (default: 0)

        Returns:
            List of transactions ordered by created_at (newest first)
        """
        result = await self.session.execute(
            select(TokenTransaction)
            .where(TokenTransaction.account_id == account_id)  # type: ignore[arg-type]
            .order_by(TokenTransaction.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def count_by_account(self, account_id: str) -> int:
        result = await self.session.execute(
            select(func.count(TokenTransaction.id)).where(  # type: ignore[arg-type]
                TokenTransaction.account_id == account_id  # type: ignore[arg-type]
            )
        )
        return result.scalar() or 0

    async def sum_by_account(self, account_id: str) -> int:
        """Sum of all signed amounts for an account (must equal its balance)."""
        result = await self.session.execute(
            select(func.coalesce(func.sum(TokenTransaction.amount), 0)).where(
                TokenTransaction.account_id == account_id  # type: ignore[arg-type]
            )
        )
        return int(result.scalar_one())
