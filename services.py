from __future__ import annotations

from datetime import date, datetime
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from database import atomic
from editing import SeriesEditor
from errors import ConflictError, NotFoundError, ValidationError
from frequency import monthly_run_rate
from models import (
    OPEN_STATUSES,
    BankAccount,
    Contract,
    ContractKind,
    RecurrenceRule,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from notifications import change_bridge
from projection import BalanceProjector
from recurrence import (
    SeriesGenerator,
    default_horizon,
    first_occurrence_on_or_after,
    local_today,
)
from schemas import (
    AccountProjection,
    BankAccountIn,
    ContractIn,
    EditResult,
    EditScope,
    GenerationReport,
    OccurrenceChanges,
    RecurrenceRuleIn,
    TransactionIn,
)

projector = BalanceProjector(change_bridge)


def get_current_company_id() -> int:
    return get_settings().default_company_id


def _creation_horizon(rule: RecurrenceRule, today: date) -> date:
    """The usual horizon, stretched so a new series has at least its next occurrence."""
    horizon = default_horizon(today)
    upcoming = first_occurrence_on_or_after(rule, today)
    if upcoming is not None and upcoming > horizon:
        horizon = upcoming
    return horizon


class AccountService:
    def __init__(self, session: Session, company_id: Optional[int] = None) -> None:
        self.session = session
        self.company_id = company_id or get_current_company_id()

    def list_all(self, include_inactive: bool = False) -> list[BankAccount]:
        stmt = (
            select(BankAccount)
            .where(
                BankAccount.company_id == self.company_id,
                BankAccount.deleted_at.is_(None),
            )
            .order_by(BankAccount.name)
        )
        if not include_inactive:
            stmt = stmt.where(BankAccount.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def get(self, account_id: int) -> BankAccount:
        account = self.session.get(BankAccount, account_id)
        if (
            not account
            or account.company_id != self.company_id
            or account.deleted_at is not None
        ):
            raise NotFoundError("Bank account not found")
        return account

    def create(self, data: BankAccountIn) -> BankAccount:
        account = BankAccount(
            company_id=self.company_id,
            name=data.name.strip(),
            current_balance_cents=data.current_balance_cents,
        )
        with atomic(self.session):
            self.session.add(account)
        return account


class ContractService:
    def __init__(self, session: Session, company_id: Optional[int] = None) -> None:
        self.session = session
        self.company_id = company_id or get_current_company_id()

    def list_all(self, include_inactive: bool = False) -> list[Contract]:
        stmt = (
            select(Contract)
            .where(
                Contract.company_id == self.company_id,
                Contract.deleted_at.is_(None),
            )
            .order_by(Contract.start_date, Contract.id)
        )
        if not include_inactive:
            stmt = stmt.where(Contract.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def get(self, contract_id: int) -> Contract:
        contract = self.session.get(Contract, contract_id)
        if (
            not contract
            or contract.company_id != self.company_id
            or contract.deleted_at is not None
        ):
            raise NotFoundError("Contract not found")
        return contract

    def create(self, data: ContractIn, today: Optional[date] = None) -> Contract:
        today = today or local_today()
        try:
            AccountService(self.session, self.company_id).get(data.bank_account_id)
        except NotFoundError as exc:
            raise ValidationError(
                f"Bank account {data.bank_account_id} is not usable"
            ) from exc
        contract = Contract(
            company_id=self.company_id,
            name=data.name.strip(),
            description=data.description,
            kind=data.kind,
            amount_cents=data.amount_cents,
            frequency=data.frequency,
            start_date=data.start_date,
            end_date=data.end_date,
            auto_generate=data.auto_generate,
            total_installments=data.total_installments,
            bank_account_id=data.bank_account_id,
        )
        revenue = data.kind == ContractKind.revenue
        rule = RecurrenceRule(
            company_id=self.company_id,
            name=contract.name,
            description=data.description,
            kind=TransactionType(data.kind.value),
            amount_cents=data.amount_cents,
            frequency=data.frequency,
            anchor_date=data.start_date,
            end_date=data.end_date,
            account_from_id=None if revenue else data.bank_account_id,
            account_to_id=data.bank_account_id if revenue else None,
            total_installments=data.total_installments,
            contract=contract,
        )
        with atomic(self.session):
            self.session.add(contract)
            self.session.add(rule)
            self.session.flush()
            if contract.auto_generate:
                SeriesGenerator(self.session).generate(
                    rule, _creation_horizon(rule, today), today=today
                )
        return contract

    def deactivate(self, contract_id: int) -> Contract:
        contract = self.get(contract_id)
        with atomic(self.session):
            contract.is_active = False
        return contract

    def get_statistics(self) -> dict[str, object]:
        contracts = self.list_all()
        stats: dict[str, object] = dict(monthly_run_rate(contracts))
        stats["revenue_count"] = sum(
            1 for c in contracts if c.kind == ContractKind.revenue
        )
        stats["expense_count"] = sum(
            1 for c in contracts if c.kind == ContractKind.expense
        )
        return stats


class RecurrenceRuleService:
    def __init__(self, session: Session, company_id: Optional[int] = None) -> None:
        self.session = session
        self.company_id = company_id or get_current_company_id()

    def get(self, rule_id: int) -> RecurrenceRule:
        rule = self.session.get(RecurrenceRule, rule_id)
        if not rule or rule.company_id != self.company_id:
            raise NotFoundError("Rule not found")
        return rule

    def list(self) -> list[RecurrenceRule]:
        stmt = (
            select(RecurrenceRule)
            .where(RecurrenceRule.company_id == self.company_id)
            .order_by(RecurrenceRule.anchor_date, RecurrenceRule.id)
        )
        return list(self.session.scalars(stmt).all())

    def create(self, data: RecurrenceRuleIn, today: Optional[date] = None) -> RecurrenceRule:
        today = today or local_today()
        rule = RecurrenceRule(
            company_id=self.company_id,
            name=data.name,
            description=data.description,
            kind=data.kind,
            amount_cents=data.amount_cents,
            frequency=data.frequency,
            anchor_date=data.anchor_date,
            end_date=data.end_date,
            account_from_id=data.account_from_id,
            account_to_id=data.account_to_id,
            total_installments=data.total_installments,
        )
        generator = SeriesGenerator(self.session)
        with atomic(self.session):
            self.session.add(rule)
            self.session.flush()
            generator.generate(rule, _creation_horizon(rule, today), today=today)
        return rule


class TransactionService:
    def __init__(self, session: Session, company_id: Optional[int] = None) -> None:
        self.session = session
        self.company_id = company_id or get_current_company_id()

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.company_id != self.company_id:
            raise NotFoundError("Transaction not found")
        if txn.deleted_at is not None and not include_deleted:
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self,
        *,
        status: Optional[TransactionStatus] = None,
        rule_id: Optional[int] = None,
        account_id: Optional[int] = None,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.company_id == self.company_id,
                Transaction.deleted_at.is_(None),
            )
            .order_by(Transaction.due_date, Transaction.id)
        )
        if status is not None:
            stmt = stmt.where(Transaction.status == status)
        if rule_id is not None:
            stmt = stmt.where(Transaction.rule_id == rule_id)
        if account_id is not None:
            stmt = stmt.where(
                (Transaction.account_from_id == account_id)
                | (Transaction.account_to_id == account_id)
            )
        return list(self.session.scalars(stmt).all())

    def create(self, data: TransactionIn, today: Optional[date] = None) -> Transaction:
        today = today or local_today()
        accounts = AccountService(self.session, self.company_id)
        debits = data.type in (TransactionType.expense, TransactionType.transfer)
        credits = data.type in (TransactionType.revenue, TransactionType.transfer)
        if debits and data.account_from_id is None:
            raise ValidationError(f"A {data.type.value} needs a debit account")
        if credits and data.account_to_id is None:
            raise ValidationError(f"A {data.type.value} needs a credit account")
        for needed, account_id in (
            (debits, data.account_from_id),
            (credits, data.account_to_id),
        ):
            if not needed:
                continue
            try:
                accounts.get(account_id)
            except NotFoundError as exc:
                raise ValidationError(
                    f"Bank account {account_id} is not usable"
                ) from exc
        txn = Transaction(
            company_id=self.company_id,
            due_date=data.due_date,
            type=data.type,
            amount_cents=data.amount_cents,
            status=(
                TransactionStatus.overdue
                if data.due_date < today
                else TransactionStatus.pending
            ),
            account_from_id=data.account_from_id if debits else None,
            account_to_id=data.account_to_id if credits else None,
            description=data.description,
        )
        with atomic(self.session):
            self.session.add(txn)
        return txn

    def settle(self, transaction_id: int, paid_at: Optional[datetime] = None) -> Transaction:
        txn = self.get(transaction_id)
        if txn.status not in OPEN_STATUSES:
            raise ConflictError(
                f"Transaction {txn.id} is {txn.status.value} and cannot be settled"
            )
        with atomic(self.session):
            if txn.type in (TransactionType.expense, TransactionType.transfer):
                self._fold(txn.account_from_id, -txn.amount_cents)
            if txn.type in (TransactionType.revenue, TransactionType.transfer):
                self._fold(txn.account_to_id, txn.amount_cents)
            txn.status = TransactionStatus.paid
            txn.paid_at = paid_at or datetime.utcnow()
        return txn

    def _fold(self, account_id: Optional[int], delta: int) -> None:
        if account_id is None:
            return
        account = self.session.get(BankAccount, account_id)
        if account is None:
            raise NotFoundError("Bank account not found")
        account.current_balance_cents += delta

    def cancel(self, transaction_id: int) -> Transaction:
        txn = self.get(transaction_id)
        if txn.status not in OPEN_STATUSES:
            raise ConflictError(
                f"Transaction {txn.id} is {txn.status.value} and cannot be cancelled"
            )
        with atomic(self.session):
            txn.status = TransactionStatus.cancelled
        return txn

    def soft_delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id, include_deleted=True)
        if txn.deleted_at is not None:
            return
        if txn.status == TransactionStatus.paid:
            raise ConflictError(f"Transaction {txn.id} is paid and cannot be deleted")
        with atomic(self.session):
            txn.deleted_at = datetime.utcnow()

    def mark_overdue(
        self, today: Optional[date] = None, *, all_companies: bool = False
    ) -> int:
        today = today or local_today()
        stmt = select(Transaction).where(
            Transaction.status == TransactionStatus.pending,
            Transaction.deleted_at.is_(None),
            Transaction.due_date < today,
        )
        if not all_companies:
            stmt = stmt.where(Transaction.company_id == self.company_id)
        with atomic(self.session):
            rows = self.session.scalars(stmt).all()
            for txn in rows:
                txn.status = TransactionStatus.overdue
        return len(rows)


class InstallmentService:
    def __init__(
        self,
        session: Session,
        company_id: Optional[int] = None,
        balance_projector: Optional[BalanceProjector] = None,
    ) -> None:
        self.session = session
        self.company_id = company_id or get_current_company_id()
        self.projector = balance_projector or projector

    def generate_installments(
        self,
        horizon: Optional[date] = None,
        *,
        today: Optional[date] = None,
        all_companies: bool = False,
    ) -> GenerationReport:
        today = today or local_today()
        horizon = horizon or default_horizon(today)
        company_id = None if all_companies else self.company_id
        with atomic(self.session):
            report = SeriesGenerator(self.session).generate_all(
                horizon, company_id=company_id, today=today
            )
        return report

    def resolve_edit(
        self,
        occurrence_id: int,
        scope: Union[str, EditScope],
        changes: OccurrenceChanges,
        today: Optional[date] = None,
    ) -> EditResult:
        editor = SeriesEditor(self.session, self.company_id, today=today)
        with atomic(self.session):
            updated = editor.resolve(occurrence_id, scope, changes)
        return EditResult(updated_ids=updated)

    def cancel_occurrences(
        self,
        occurrence_id: int,
        scope: Union[str, EditScope],
        today: Optional[date] = None,
    ) -> EditResult:
        editor = SeriesEditor(self.session, self.company_id, today=today)
        with atomic(self.session):
            updated = editor.cancel(occurrence_id, scope)
        return EditResult(updated_ids=updated)

    def get_projected_balance(self, account_id: int) -> int:
        return self.projector.project(self.session, account_id, self.company_id)

    def projections(self) -> list[AccountProjection]:
        return self.projector.rederive(self.session, self.company_id)
