"""AccountBalance entity - One row of spendable tokens per account."""

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime
from sqlmodel import Field, SQLModel

from genledger.core.time import utcnow


class AccountBalance(SQLModel, table=True):
    """AccountBalance holds the current token balance and lifetime usage of an account.

    Mutated only through the conditional UPDATE statements in AccountRepository,
    always paired with a TokenTransaction row in the same database transaction.
    """

    __tablename__ = "account_balances"  # type: ignore[assignment]
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_account_balances_balance_non_negative"),
    )

    account_id: str = Field(primary_key=True, max_length=255)
    balance: int = Field(default=0, ge=0)
    total_used: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
