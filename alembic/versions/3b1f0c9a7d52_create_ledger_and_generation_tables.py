"""create_ledger_and_generation_tables

Revision ID: 3b1f0c9a7d52
Revises:
Create Date: 2026-10-18 12:04:31.118402

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b1f0c9a7d52"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

transaction_type = sa.Enum("BONUS", "USAGE", "PURCHASE", "REFUND", name="transactiontype")
job_status = sa.Enum("PENDING", "PROCESSING", "COMPLETED", "FAILED", name="jobstatus")
refund_status = sa.Enum("NONE", "PENDING", "ISSUED", name="refundstatus")


def upgrade() -> None:
    """Create account_balances, token_transactions and generation_jobs."""
    op.create_table(
        "account_balances",
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("total_used", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("account_id"),
        sa.CheckConstraint("balance >= 0", name="ck_account_balances_balance_non_negative"),
    )

    op.create_table(
        "token_transactions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column("description", sa.String(length=500), nullable=False),
        sa.Column("reference_id", sa.String(length=255), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["account_balances.account_id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index(
        "ix_token_transactions_account_id", "token_transactions", ["account_id"], unique=False
    )
    op.create_index("ix_token_transactions_type", "token_transactions", ["type"], unique=False)
    op.create_index(
        "ix_token_transactions_reference_id", "token_transactions", ["reference_id"], unique=False
    )

    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("external_task_id", sa.String(length=255), nullable=True),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("model", sa.String(length=100), nullable=False),
        sa.Column("prompt", sa.String(), nullable=True),
        sa.Column("settings", sa.JSON(), nullable=True),
        sa.Column("status", job_status, nullable=False),
        sa.Column("images", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.String(length=1000), nullable=True),
        sa.Column("progress_percent", sa.Integer(), nullable=False),
        sa.Column("tokens_reserved", sa.Integer(), nullable=False),
        sa.Column("tokens_charged", sa.Integer(), nullable=False),
        sa.Column("charge_transaction_id", sa.Uuid(), nullable=True),
        sa.Column("refund_status", refund_status, nullable=False),
        sa.Column("refund_attempts", sa.Integer(), nullable=False),
        sa.Column("provider_metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_polled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dead_lettered_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["account_balances.account_id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_task_id"),
    )
    op.create_index(
        "ix_generation_jobs_account_id", "generation_jobs", ["account_id"], unique=False
    )
    op.create_index("ix_generation_jobs_status", "generation_jobs", ["status"], unique=False)
    op.create_index(
        "ix_generation_jobs_refund_status", "generation_jobs", ["refund_status"], unique=False
    )


def downgrade() -> None:
    """Drop ledger and generation tables."""
    op.drop_index("ix_generation_jobs_refund_status", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_status", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_account_id", table_name="generation_jobs")
    op.drop_table("generation_jobs")

    op.drop_index("ix_token_transactions_reference_id", table_name="token_transactions")
    op.drop_index("ix_token_transactions_type", table_name="token_transactions")
    op.drop_index("ix_token_transactions_account_id", table_name="token_transactions")
    op.drop_table("token_transactions")

    op.drop_table("account_balances")

    refund_status.drop(op.get_bind(), checkfirst=True)
    job_status.drop(op.get_bind(), checkfirst=True)
    transaction_type.drop(op.get_bind(), checkfirst=True)
