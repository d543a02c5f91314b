"""initial schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


FREQUENCY = sa.Enum(
    "daily",
    "weekly",
    "monthly",
    "quarterly",
    "semiannual",
    "annual",
    name="frequency",
)
TRANSACTION_TYPE = sa.Enum("revenue", "expense", "transfer", name="transactiontype")


def upgrade():
    op.create_table(
        "bank_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "current_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_bank_accounts_company", "bank_accounts", ["company_id"])

    op.create_table(
        "contracts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column(
            "kind", sa.Enum("revenue", "expense", name="contractkind"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("frequency", FREQUENCY, nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "auto_generate", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column("total_installments", sa.Integer()),
        sa.Column(
            "bank_account_id", sa.Integer(), sa.ForeignKey("bank_accounts.id")
        ),
        sa.Column("last_generated_date", sa.Date()),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_contract_amount_positive"),
    )
    op.create_index(
        "ix_contracts_company_active", "contracts", ["company_id", "is_active"]
    )

    op.create_table(
        "recurrence_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=120)),
        sa.Column("description", sa.Text()),
        sa.Column("kind", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("frequency", FREQUENCY, nullable=False),
        sa.Column("anchor_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "account_from_id", sa.Integer(), sa.ForeignKey("bank_accounts.id")
        ),
        sa.Column("account_to_id", sa.Integer(), sa.ForeignKey("bank_accounts.id")),
        sa.Column("contract_id", sa.Integer(), sa.ForeignKey("contracts.id")),
        sa.Column(
            "previous_rule_id", sa.Integer(), sa.ForeignKey("recurrence_rules.id")
        ),
        sa.Column("anchor_transaction_id", sa.Integer()),
        sa.Column("total_installments", sa.Integer()),
        sa.Column("last_generated_date", sa.Date()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_rule_amount_positive"),
    )
    op.create_index(
        "ix_rules_company_active", "recurrence_rules", ["company_id", "is_active"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.Integer(), nullable=False, default=1),
        sa.Column("rule_id", sa.Integer(), sa.ForeignKey("recurrence_rules.id")),
        sa.Column("contract_id", sa.Integer(), sa.ForeignKey("contracts.id")),
        sa.Column("occurrence_date", sa.Date()),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "paid", "overdue", "cancelled", name="transactionstatus"
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column(
            "account_from_id", sa.Integer(), sa.ForeignKey("bank_accounts.id")
        ),
        sa.Column("account_to_id", sa.Integer(), sa.ForeignKey("bank_accounts.id")),
        sa.Column("description", sa.Text()),
        sa.Column("paid_at", sa.DateTime()),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "rule_id", "occurrence_date", name="uq_txn_rule_occurrence"
        ),
        sa.CheckConstraint(
            "amount_cents > 0", name="ck_transactions_amount_positive"
        ),
    )
    op.create_index(
        "ix_transactions_company_status", "transactions", ["company_id", "status"]
    )
    op.create_index(
        "ix_transactions_account_from", "transactions", ["account_from_id", "status"]
    )
    op.create_index(
        "ix_transactions_account_to", "transactions", ["account_to_id", "status"]
    )


def downgrade():
    op.drop_index("ix_transactions_account_to", table_name="transactions")
    op.drop_index("ix_transactions_account_from", table_name="transactions")
    op.drop_index("ix_transactions_company_status", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_rules_company_active", table_name="recurrence_rules")
    op.drop_table("recurrence_rules")
    op.drop_index("ix_contracts_company_active", table_name="contracts")
    op.drop_table("contracts")
    op.drop_index("ix_bank_accounts_company", table_name="bank_accounts")
    op.drop_table("bank_accounts")
