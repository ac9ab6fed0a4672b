"""ledger schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("owner_id", "name", name="uq_account_owner_name"),
    )
    op.create_index("ix_accounts_owner", "accounts", ["owner_id"])

    op.create_table(
        "categories",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("owner_id", sa.String(length=64)),
        sa.Column("name", sa.String(length=64), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("owner_id", "name", name="uq_category_owner_name"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "account_id",
            sa.String(length=36),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        sa.Column("updated_by", sa.String(length=64)),
        sa.Column("note", sa.String(length=255), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("is_income", sa.Boolean(), nullable=False),
        sa.Column(
            "category_id",
            sa.String(length=36),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column("transfer", sa.String(length=64)),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "recurrence_type",
            sa.Enum("daily", "weekly", "monthly", "yearly", name="recurrencetype"),
        ),
        sa.Column("recurrence_end_date", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_account_occurred",
        "transactions",
        ["account_id", "occurred_at"],
    )
    op.create_index(
        "ix_transactions_owner_occurred", "transactions", ["owner_id", "occurred_at"]
    )
    op.create_index(
        "ix_transactions_owner_recurring", "transactions", ["owner_id", "recurring"]
    )

    op.create_table(
        "analytics",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "account_id",
            sa.String(length=36),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("income_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expense_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "previous_income_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "previous_expense_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "previous_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "income_percentage_change", sa.Float(), nullable=False, server_default="0"
        ),
        sa.Column(
            "expenses_percentage_change", sa.Float(), nullable=False, server_default="0"
        ),
        *_timestamps(),
    )


def downgrade():
    op.drop_table("analytics")
    op.drop_index("ix_transactions_owner_recurring", table_name="transactions")
    op.drop_index("ix_transactions_owner_occurred", table_name="transactions")
    op.drop_index("ix_transactions_account_occurred", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
    op.drop_index("ix_accounts_owner", table_name="accounts")
    op.drop_table("accounts")
    sa.Enum(name="recurrencetype").drop(op.get_bind(), checkfirst=True)
