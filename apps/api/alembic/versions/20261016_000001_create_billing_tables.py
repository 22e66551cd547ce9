"""create billing tables

Revision ID: 20261016_000001
Revises:
Create Date: 2026-10-16 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261016_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("business_name", sa.String(), nullable=True),
        sa.Column("plan", sa.String(), server_default="no_plan", nullable=False),
        sa.Column("billing_period", sa.String(), server_default="none", nullable=False),
        sa.Column("external_customer_id", sa.String(), nullable=True),
        sa.Column("external_subscription_id", sa.String(), nullable=True),
        sa.Column("subscription_status", sa.String(), nullable=True),
        sa.Column("is_free_account", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("has_had_paid_plan", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_accounts_email"), "accounts", ["email"], unique=False)
    op.create_index(op.f("ix_accounts_external_customer_id"), "accounts", ["external_customer_id"], unique=False)
    op.create_index(
        op.f("ix_accounts_external_subscription_id"), "accounts", ["external_subscription_id"], unique=False
    )
    op.create_index(op.f("ix_accounts_subscription_status"), "accounts", ["subscription_status"], unique=False)

    op.create_table(
        "credit_balances",
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("included_credits", sa.Integer(), nullable=False),
        sa.Column("purchased_credits", sa.Integer(), nullable=False),
        sa.Column("last_grant_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("account_id"),
    )

    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("credit_type", sa.String(), nullable=False),
        sa.Column("transaction_type", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("billing_reference", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index(op.f("ix_credit_ledger_account_id"), "credit_ledger", ["account_id"], unique=False)
    op.create_index(op.f("ix_credit_ledger_transaction_type"), "credit_ledger", ["transaction_type"], unique=False)
    op.create_index(op.f("ix_credit_ledger_created_at"), "credit_ledger", ["created_at"], unique=False)
    op.create_index("ix_credit_ledger_account_created", "credit_ledger", ["account_id", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_credit_ledger_account_created", table_name="credit_ledger")
    op.drop_index(op.f("ix_credit_ledger_created_at"), table_name="credit_ledger")
    op.drop_index(op.f("ix_credit_ledger_transaction_type"), table_name="credit_ledger")
    op.drop_index(op.f("ix_credit_ledger_account_id"), table_name="credit_ledger")
    op.drop_table("credit_ledger")
    op.drop_table("credit_balances")
    op.drop_index(op.f("ix_accounts_subscription_status"), table_name="accounts")
    op.drop_index(op.f("ix_accounts_external_subscription_id"), table_name="accounts")
    op.drop_index(op.f("ix_accounts_external_customer_id"), table_name="accounts")
    op.drop_index(op.f("ix_accounts_email"), table_name="accounts")
    op.drop_table("accounts")
