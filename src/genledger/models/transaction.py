"""TokenTransaction entity - Append-only ledger of balance mutations."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from genledger.core.time import utcnow


class TransactionType(str, Enum):
    """Reason a balance changed."""

    BONUS = "bonus"
    USAGE = "usage"
    PURCHASE = "purchase"
    REFUND = "refund"


class TokenTransaction(SQLModel, table=True):
    """TokenTransaction records one signed balance mutation.

    Positive amounts are credits, negative amounts are debits. The sum of all
    amounts for an account equals its current balance.

    idempotency_key is unique so a replayed credit or debit (duplicate payment
    confirmation, repeated refund) can never be written twice.
    """

    __tablename__ = "token_transactions"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    account_id: str = Field(foreign_key="account_balances.account_id", index=True, max_length=255)
    amount: int
    type: TransactionType = Field(index=True)
    description: str = Field(default="", max_length=500)
    reference_id: Optional[str] = Field(default=None, max_length=255, index=True)
    idempotency_key: Optional[str] = Field(default=None, max_length=255, unique=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
