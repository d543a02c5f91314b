from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from errors import SettledTransactionError


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    semiannual = "semiannual"
    annual = "annual"


class ContractKind(str, Enum):
    revenue = "revenue"
    expense = "expense"


class TransactionType(str, Enum):
    revenue = "revenue"
    expense = "expense"
    transfer = "transfer"


class TransactionStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    overdue = "overdue"
    cancelled = "cancelled"


OPEN_STATUSES = (TransactionStatus.pending, TransactionStatus.overdue)
SETTLED_STATUSES = (TransactionStatus.paid, TransactionStatus.cancelled)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class BankAccount(Base, TimestampMixin):
    __tablename__ = "bank_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (Index("ix_bank_accounts_company", "company_id"),)


class Contract(Base, TimestampMixin):
    __tablename__ = "contracts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    kind: Mapped[ContractKind] = mapped_column(SAEnum(ContractKind), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    frequency: Mapped[Frequency] = mapped_column(SAEnum(Frequency), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    auto_generate: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    total_installments: Mapped[Optional[int]] = mapped_column(Integer)
    bank_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("bank_accounts.id")
    )
    last_generated_date: Mapped[Optional[date]] = mapped_column(Date)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    bank_account: Mapped[Optional["BankAccount"]] = relationship("BankAccount")
    rules: Mapped[list["RecurrenceRule"]] = relationship(
        "RecurrenceRule", back_populates="contract", order_by="RecurrenceRule.id"
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_contract_amount_positive"),
        Index("ix_contracts_company_active", "company_id", "is_active"),
    )

    @property
    def current_rule(self) -> Optional["RecurrenceRule"]:
        """The newest segment, i.e. the one no other segment was split from."""
        split_from = {r.previous_rule_id for r in self.rules if r.previous_rule_id}
        heads = [r for r in self.rules if r.id not in split_from]
        return heads[-1] if heads else None


class RecurrenceRule(Base, TimestampMixin):
    __tablename__ = "recurrence_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[Optional[str]] = mapped_column(String(120))
    description: Mapped[Optional[str]] = mapped_column(Text)
    kind: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    frequency: Mapped[Frequency] = mapped_column(SAEnum(Frequency), nullable=False)
    anchor_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    account_from_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("bank_accounts.id")
    )
    account_to_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("bank_accounts.id")
    )
    contract_id: Mapped[Optional[int]] = mapped_column(ForeignKey("contracts.id"))
    previous_rule_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurrence_rules.id")
    )
    # Not a foreign key: transactions already reference this table.
    anchor_transaction_id: Mapped[Optional[int]] = mapped_column(Integer)
    total_installments: Mapped[Optional[int]] = mapped_column(Integer)
    last_generated_date: Mapped[Optional[date]] = mapped_column(Date)

    contract: Mapped[Optional["Contract"]] = relationship(
        "Contract", back_populates="rules"
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="rule"
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_rule_amount_positive"),
        Index("ix_rules_company_active", "company_id", "is_active"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    rule_id: Mapped[Optional[int]] = mapped_column(ForeignKey("recurrence_rules.id"))
    contract_id: Mapped[Optional[int]] = mapped_column(ForeignKey("contracts.id"))
    occurrence_date: Mapped[Optional[date]] = mapped_column(Date)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(TransactionStatus), nullable=False, default=TransactionStatus.pending
    )
    account_from_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("bank_accounts.id")
    )
    account_to_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("bank_accounts.id")
    )
    description: Mapped[Optional[str]] = mapped_column(Text)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    rule: Mapped[Optional["RecurrenceRule"]] = relationship(
        "RecurrenceRule", back_populates="transactions"
    )

    __table_args__ = (
        UniqueConstraint("rule_id", "occurrence_date", name="uq_txn_rule_occurrence"),
        Index("ix_transactions_company_status", "company_id", "status"),
        Index("ix_transactions_account_from", "account_from_id", "status"),
        Index("ix_transactions_account_to", "account_to_id", "status"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )


SETTLED_IMMUTABLE_FIELDS = (
    "rule_id",
    "contract_id",
    "occurrence_date",
    "due_date",
    "type",
    "amount_cents",
    "status",
    "account_from_id",
    "account_to_id",
    "description",
)


@event.listens_for(Transaction, "before_update")
def _guard_settled_history(mapper, connection, target: Transaction) -> None:
    state = inspect(target)
    status_history = state.attrs.status.history
    previous = status_history.deleted[0] if status_history.deleted else target.status
    if previous not in SETTLED_STATUSES:
        return
    fields = SETTLED_IMMUTABLE_FIELDS
    if previous == TransactionStatus.cancelled:
        # A cancelled row follows its series when the series is split.
        fields = tuple(name for name in fields if name != "rule_id")
    changed = [name for name in fields if state.attrs[name].history.has_changes()]
    if changed:
        raise SettledTransactionError(
            f"Transaction {target.id} is {previous.value}; refusing to rewrite "
            + ", ".join(changed)
        )
