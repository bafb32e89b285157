"""Token ledger service: balances, debits, credits and transaction history.

Every balance change is paired with exactly one TokenTransaction written in the
same database transaction, so sum(transactions.amount) == balance per account.
"""

import hashlib
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError

from genledger.models.account import AccountBalance
from genledger.models.transaction import TokenTransaction, TransactionType
from genledger.services.exceptions import AccountNotFound, InsufficientBalance, InvalidRequest
from genledger.services.pricing import TOKEN_PACKAGES
from genledger.uow import UnitOfWork

logger = structlog.get_logger()


def signup_key(account_id: str) -> str:
    return f"signup:{account_id}"


def usage_key(job_id: object) -> str:
    return f"usage:{job_id}"


def refund_key(job_id: object) -> str:
    return f"refund:{job_id}"


def purchase_key(payment_key: str) -> str:
    return f"purchase:{payment_key}"


def client_key(account_id: str, key: str) -> str:
    """Scope a caller-supplied idempotency key to its account.

    The account id is hashed so the key fits the 255 character column.
    """
    account_digest = hashlib.sha256(account_id.encode()).hexdigest()[:32]
    return f"client:{account_digest}:{key}"


def _check_replay(existing: TokenTransaction, account_id: str, amount: int, type: TransactionType) -> None:
    """Reject a reused idempotency key that names a different operation.

    Raises:
        InvalidRequest: If account, signed amount or type differ from the stored row
    """
    if (existing.account_id, existing.amount, existing.type) != (account_id, amount, type):
        logger.warning(
            "ledger.idempotency_key_conflict",
            idempotency_key=existing.idempotency_key,
            account_id=account_id,
            stored_account_id=existing.account_id,
            amount=amount,
            stored_amount=existing.amount,
        )
        raise InvalidRequest(f"Idempotency key {existing.idempotency_key} was used for a different operation")


class TokenLedgerService:
    """Token accounting on top of the account and transaction repositories.

    Methods prefixed with apply_ run inside a caller-provided UnitOfWork so a
    debit or credit can commit together with a job state change. The remaining
    methods open their own UnitOfWork.
    """

    def __init__(self, uow_factory, signup_bonus: int = 100):
        """Initialize ledger service.

        Args:
            uow_factory: Factory returning UnitOfWork instances (see create_uow_factory)
            signup_bonus: Tokens granted when an account is first initialized
        """
        self.uow_factory = uow_factory
        self.signup_bonus = signup_bonus

    async def apply_debit(
        self,
        uow: UnitOfWork,
        account_id: str,
        amount: int,
        description: str,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TokenTransaction:
        """Debit tokens inside an open UnitOfWork.

        The conditional UPDATE runs before anything else is written so it is the
        statement that takes the write lock.

        Args:
            uow: Open UnitOfWork the debit commits with
            account_id: Account to debit
            amount: Positive number of tokens
            description: Human readable reason
            reference_id: Related entity (job id)
            idempotency_key: Unique key; a repeated key returns the first transaction

        Returns:
            The usage transaction (negative amount)

        Raises:
            InvalidRequest: If amount is not positive or the key was used for another debit
            AccountNotFound: If the account does not exist
            InsufficientBalance: If balance < amount (nothing is written)
        """
        if amount <= 0:
            raise InvalidRequest("Debit amount must be positive")

        if idempotency_key:
            existing = await uow.transactions.get_by_idempotency_key(idempotency_key)
            if existing is not None:
                _check_replay(existing, account_id, -amount, TransactionType.USAGE)
                logger.info("ledger.debit_replayed", account_id=account_id, idempotency_key=idempotency_key)
                return existing

        new_balance = await uow.accounts.debit_if_sufficient(account_id, amount)
        if new_balance is None:
            account = await uow.accounts.get(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            raise InsufficientBalance(required=amount, available=account.balance)

        transaction = TokenTransaction(
            account_id=account_id,
            amount=-amount,
            type=TransactionType.USAGE,
            description=description[:500],
            reference_id=reference_id,
            idempotency_key=idempotency_key,
        )
        await uow.transactions.add(transaction)

        logger.info(
            "ledger.debited",
            account_id=account_id,
            amount=amount,
            balance=new_balance,
            reference_id=reference_id,
        )
        return transaction

    async def apply_credit(
        self,
        uow: UnitOfWork,
        account_id: str,
        amount: int,
        type: TransactionType,
        description: str,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TokenTransaction:
        """Credit tokens inside an open UnitOfWork.

        Args:
            uow: Open UnitOfWork the credit commits with
            account_id: Account to credit
            amount: Positive number of tokens
            type: Transaction type (bonus, purchase, refund)
            description: Human readable reason
            reference_id: Related entity (payment key, job id)
            idempotency_key: Unique key; a repeated key returns the first transaction

        Returns:
            The credit transaction (positive amount)

        Raises:
            InvalidRequest: If amount is not positive, type is usage, or the key was
                used for another operation
            AccountNotFound: If the account does not exist
        """
        if amount <= 0:
            raise InvalidRequest("Credit amount must be positive")
        if type == TransactionType.USAGE:
            raise InvalidRequest("Usage transactions are debits")

        if idempotency_key:
            existing = await uow.transactions.get_by_idempotency_key(idempotency_key)
            if existing is not None:
                _check_replay(existing, account_id, amount, type)
                logger.info("ledger.credit_replayed", account_id=account_id, idempotency_key=idempotency_key)
                return existing

        new_balance = await uow.accounts.credit(account_id, amount)
        if new_balance is None:
            raise AccountNotFound(account_id)

        transaction = TokenTransaction(
            account_id=account_id,
            amount=amount,
            type=type,
            description=description[:500],
            reference_id=reference_id,
            idempotency_key=idempotency_key,
        )
        await uow.transactions.add(transaction)

        logger.info(
            "ledger.credited",
            account_id=account_id,
            amount=amount,
            type=type.value,
            balance=new_balance,
            reference_id=reference_id,
        )
        return transaction

    async def reserve_and_debit(
        self,
        account_id: str,
        amount: int,
        description: str,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TokenTransaction:
        """Atomically check the balance and debit tokens.

        Concurrent calls for one account are linearized by the database; the
        balance never goes negative and a failed call records nothing.

        Raises:
            InvalidRequest: If amount is not positive
            AccountNotFound: If the account does not exist
            InsufficientBalance: If balance < amount
        """
        try:
            async with await self.uow_factory() as uow:
                return await self.apply_debit(
                    uow, account_id, amount, description, reference_id, idempotency_key
                )
        except IntegrityError:
            # Lost an idempotency race; the winner's row is the result
            if not idempotency_key:
                raise
            existing = await self._get_by_idempotency_key(idempotency_key)
            _check_replay(existing, account_id, -amount, TransactionType.USAGE)
            return existing

    async def credit(
        self,
        account_id: str,
        amount: int,
        type: TransactionType,
        description: str,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TokenTransaction:
        """Credit tokens to an existing account.

        A repeated idempotency key returns the original transaction and leaves
        the balance unchanged.

        Raises:
            InvalidRequest: If amount is not positive
            AccountNotFound: If the account does not exist
        """
        try:
            async with await self.uow_factory() as uow:
                return await self.apply_credit(
                    uow, account_id, amount, type, description, reference_id, idempotency_key
                )
        except IntegrityError:
            if not idempotency_key:
                raise
            existing = await self._get_by_idempotency_key(idempotency_key)
            _check_replay(existing, account_id, amount, type)
            return existing

    async def use_tokens(
        self,
        account_id: str,
        amount: int,
        description: str = "Token usage",
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TokenTransaction:
        return await self.reserve_and_debit(account_id, amount, description, reference_id, idempotency_key)

    async def add_tokens(
        self,
        account_id: str,
        amount: int,
        type: TransactionType = TransactionType.PURCHASE,
        description: str = "Token purchase",
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TokenTransaction:
        return await self.credit(account_id, amount, type, description, reference_id, idempotency_key)

    async def purchase_package(self, account_id: str, package_id: str, payment_key: str) -> TokenTransaction:
        """Credit a confirmed package purchase.

        The payment key doubles as the idempotency key, so a replayed payment
        confirmation never credits twice.

        Raises:
            InvalidRequest: If the package is unknown or payment_key is empty
            AccountNotFound: If the account does not exist
        """
        package = TOKEN_PACKAGES.get(package_id)
        if package is None:
            raise InvalidRequest(f"Unknown token package: {package_id}")
        if not payment_key:
            raise InvalidRequest("payment_key is required")

        return await self.credit(
            account_id,
            package.tokens,
            TransactionType.PURCHASE,
            f"{package.name} package ({package.tokens} tokens)",
            reference_id=payment_key,
            idempotency_key=purchase_key(payment_key),
        )

    async def ensure_account(self, account_id: str) -> AccountBalance:
        """Create the account with its signup bonus if it does not exist yet.

        Idempotent; concurrent first calls converge on a single account and a
        single bonus transaction.

        Returns:
            The existing or newly created account
        """
        if not account_id:
            raise InvalidRequest("account_id is required")

        try:
            async with await self.uow_factory() as uow:
                account = await uow.accounts.get(account_id)
                if account is not None:
                    return account

                account = await uow.accounts.add(
                    AccountBalance(account_id=account_id, balance=self.signup_bonus)
                )
                if self.signup_bonus > 0:
                    await uow.transactions.add(
                        TokenTransaction(
                            account_id=account_id,
                            amount=self.signup_bonus,
                            type=TransactionType.BONUS,
                            description="Signup bonus",
                            idempotency_key=signup_key(account_id),
                        )
                    )
        except IntegrityError:
            logger.debug("ledger.account_create_raced", account_id=account_id)
            return await self.get_account(account_id)

        logger.info("ledger.account_created", account_id=account_id, balance=self.signup_bonus)
        return account

    async def get_account(self, account_id: str) -> AccountBalance:
        """Raises AccountNotFound if the account does not exist."""
        async with await self.uow_factory() as uow:
            account = await uow.accounts.get(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def get_balance(self, account_id: str) -> int:
        account = await self.get_account(account_id)
        return account.balance

    async def get_history(
        self, account_id: str, limit: int = 50, offset: int = 0
    ) -> tuple[list[TokenTransaction], int]:
        """Retrieve an account's transactions, newest first, with total count.

        Raises:
            AccountNotFound: If the account does not exist
        """
        async with await self.uow_factory() as uow:
            if await uow.accounts.get(account_id) is None:
                raise AccountNotFound(account_id)
            transactions = await uow.transactions.list_by_account(account_id, limit, offset)
            total = await uow.transactions.count_by_account(account_id)
        return transactions, total

    async def verify_invariant(self, account_id: str) -> bool:
        """Check that the transaction log explains the current balance.

        Returns:
            True if sum(transaction amounts) equals the balance
        """
        async with await self.uow_factory() as uow:
            account = await uow.accounts.get(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            total = await uow.transactions.sum_by_account(account_id)

        if total != account.balance:
            logger.error(
                "ledger.invariant_violated",
                account_id=account_id,
                balance=account.balance,
                transaction_sum=total,
            )
            return False
        return True

    async def _get_by_idempotency_key(self, key: str) -> TokenTransaction:
        async with await self.uow_factory() as uow:
            existing = await uow.transactions.get_by_idempotency_key(key)
        if existing is None:
            raise RuntimeError(f"Transaction {key} vanished after unique violation")
        return existing
