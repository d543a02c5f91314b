import logging
from datetime import date, datetime, timedelta
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from errors import ConflictError, RuleFailure, TransientStoreError, ValidationError
from frequency import parse_frequency
from models import (
    BankAccount,
    Contract,
    Frequency,
    RecurrenceRule,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from schemas import GenerationReport

logger = logging.getLogger(__name__)

DAY_STEPS: dict[Frequency, int] = {
    Frequency.daily: 1,
    Frequency.weekly: 7,
}
MONTH_STEPS: dict[Frequency, int] = {
    Frequency.monthly: 1,
    Frequency.quarterly: 3,
    Frequency.semiannual: 6,
    Frequency.annual: 12,
}

if set(DAY_STEPS) | set(MONTH_STEPS) != set(Frequency):
    raise RuntimeError("Every Frequency needs a cadence step")


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(desired_day, days_in_month(year, month)))


def step(frequency: Frequency, anchor: date, k: int) -> date:
    """The k-th occurrence of a series anchored at ``anchor``.

    Computed from the anchor rather than the previous occurrence, so an anchor
    on the 31st snaps to short month ends without drifting to the 28th.
    """
    if frequency in DAY_STEPS:
        return anchor + timedelta(days=DAY_STEPS[frequency] * k)
    return add_months(anchor, MONTH_STEPS[frequency] * k, desired_day=anchor.day)


def occurrence_dates(rule: RecurrenceRule, until: date) -> Iterator[date]:
    """Cadence dates from the rule's anchor up to ``until`` (inclusive)."""
    last = until if rule.end_date is None else min(until, rule.end_date)
    k = 0
    while True:
        current = step(rule.frequency, rule.anchor_date, k)
        if current > last:
            return
        yield current
        k += 1


def first_occurrence_on_or_after(rule: RecurrenceRule, day: date) -> Optional[date]:
    k = 0
    while True:
        current = step(rule.frequency, rule.anchor_date, k)
        if rule.end_date and current > rule.end_date:
            return None
        if current >= day:
            return current
        k += 1


def end_of_month(day: date) -> date:
    return date(day.year, day.month, days_in_month(day.year, day.month))


def default_horizon(today: Optional[date] = None) -> date:
    today = today or local_today()
    return end_of_month(today) + timedelta(days=get_settings().horizon_days)


def validate_rule(rule: RecurrenceRule) -> None:
    if rule.amount_cents is None or rule.amount_cents <= 0:
        raise ValidationError(f"Rule {rule.id}: amount must be positive")
    if rule.frequency is None:
        raise ValidationError(f"Rule {rule.id}: frequency is required")
    rule.frequency = parse_frequency(rule.frequency)
    if rule.anchor_date is None:
        raise ValidationError(f"Rule {rule.id}: anchor date is required")
    if rule.end_date is not None and rule.end_date < rule.anchor_date:
        raise ValidationError(f"Rule {rule.id}: end date is before anchor date")


class SeriesGenerator:
    def __init__(self, session: Session) -> None:
        self.session = session

    def bound_accounts(
        self, rule: RecurrenceRule
    ) -> tuple[Optional[int], Optional[int]]:
        debits = rule.kind in (TransactionType.expense, TransactionType.transfer)
        credits = rule.kind in (TransactionType.revenue, TransactionType.transfer)
        for account_id, needed, side in (
            (rule.account_from_id, debits, "debit"),
            (rule.account_to_id, credits, "credit"),
        ):
            if not needed:
                continue
            if account_id is None:
                raise ValidationError(f"Rule {rule.id}: no {side} account bound")
            account = self.session.get(BankAccount, account_id)
            if (
                not account
                or account.company_id != rule.company_id
                or account.deleted_at is not None
                or not account.is_active
            ):
                raise ValidationError(
                    f"Rule {rule.id}: {side} account {account_id} is not usable"
                )
        return (
            rule.account_from_id if debits else None,
            rule.account_to_id if credits else None,
        )

    @staticmethod
    def is_generating(rule: RecurrenceRule) -> bool:
        if not rule.is_active:
            return False
        contract = rule.contract
        if contract and (not contract.is_active or contract.deleted_at is not None):
            return False
        return True

    def materialized_dates(self, rule_id: int) -> set[date]:
        stmt = select(Transaction.occurrence_date).where(
            Transaction.rule_id == rule_id,
            Transaction.occurrence_date.isnot(None),
        )
        return set(self.session.scalars(stmt).all())

    def generate(
        self,
        rule: RecurrenceRule,
        horizon: date,
        today: Optional[date] = None,
    ) -> list[Transaction]:
        today = today or local_today()
        validate_rule(rule)
        if not self.is_generating(rule):
            return []
        account_from_id, account_to_id = self.bound_accounts(rule)

        self.session.flush()
        existing = self.materialized_dates(rule.id)
        remaining = None
        if rule.total_installments is not None:
            remaining = rule.total_installments - len(existing)

        created: list[Transaction] = []
        for occurrence_date in occurrence_dates(rule, horizon):
            if remaining is not None and remaining <= 0:
                break
            if occurrence_date in existing:
                continue
            txn = self._materialize(
                rule, occurrence_date, account_from_id, account_to_id, today
            )
            if txn is None:
                continue
            created.append(txn)
            if remaining is not None:
                remaining -= 1

        if created:
            last = created[-1].occurrence_date
            if rule.last_generated_date is None or last > rule.last_generated_date:
                rule.last_generated_date = last
            if rule.contract is not None:
                rule.contract.last_generated_date = rule.last_generated_date
            logger.info(
                f"series_generated: rule_id={rule.id} created={len(created)} "
                f"first={created[0].occurrence_date} last={last}"
            )
        if rule.anchor_transaction_id is None:
            rule.anchor_transaction_id = self.session.scalar(
                select(Transaction.id).where(
                    Transaction.rule_id == rule.id,
                    Transaction.occurrence_date == rule.anchor_date,
                )
            )
        self._retire_if_exhausted(rule, remaining)
        self.session.flush()
        return created

    def _materialize(
        self,
        rule: RecurrenceRule,
        occurrence_date: date,
        account_from_id: Optional[int],
        account_to_id: Optional[int],
        today: date,
    ) -> Optional[Transaction]:
        txn = Transaction(
            company_id=rule.company_id,
            rule_id=rule.id,
            contract_id=rule.contract_id,
            occurrence_date=occurrence_date,
            due_date=occurrence_date,
            type=rule.kind,
            amount_cents=rule.amount_cents,
            status=(
                TransactionStatus.overdue
                if occurrence_date < today
                else TransactionStatus.pending
            ),
            account_from_id=account_from_id,
            account_to_id=account_to_id,
            description=rule.description or rule.name,
        )
        try:
            with self.session.begin_nested():
                self.session.add(txn)
        except IntegrityError:
            if occurrence_date not in self.materialized_dates(rule.id):
                raise
            # Another run reserved the same (rule_id, occurrence_date) slot.
            logger.info(
                f"series_slot_taken: rule_id={rule.id} occurrence_date={occurrence_date}"
            )
            return None
        return txn

    def _retire_if_exhausted(
        self, rule: RecurrenceRule, remaining: Optional[int]
    ) -> None:
        if remaining is None or remaining > 0:
            return
        contract = rule.contract
        if contract is not None and contract.is_active and contract.current_rule is rule:
            contract.is_active = False
            logger.info(
                f"contract_completed: contract_id={contract.id} "
                f"installments={rule.total_installments}"
            )

    def eligible_rules(self, company_id: Optional[int] = None) -> list[RecurrenceRule]:
        stmt = (
            select(RecurrenceRule)
            .outerjoin(Contract, RecurrenceRule.contract_id == Contract.id)
            .where(
                RecurrenceRule.is_active.is_(True),
                or_(
                    RecurrenceRule.contract_id.is_(None),
                    and_(
                        Contract.is_active.is_(True),
                        Contract.auto_generate.is_(True),
                        Contract.deleted_at.is_(None),
                    ),
                ),
            )
            .order_by(RecurrenceRule.id)
        )
        if company_id is not None:
            stmt = stmt.where(RecurrenceRule.company_id == company_id)
        return list(self.session.scalars(stmt).all())

    def generate_all(
        self,
        horizon: date,
        company_id: Optional[int] = None,
        today: Optional[date] = None,
    ) -> GenerationReport:
        today = today or local_today()
        report = GenerationReport()
        for rule in self.eligible_rules(company_id):
            rule_id = rule.id
            try:
                with self.session.begin_nested():
                    created = self.generate(rule, horizon, today=today)
            except OperationalError as exc:
                raise TransientStoreError(str(exc.orig or exc)) from exc
            except (ValidationError, ConflictError, SQLAlchemyError) as exc:
                logger.warning(
                    f"series_generation_failed: rule_id={rule_id} "
                    f"error={type(exc).__name__} message={exc}"
                )
                report.errors.append(
                    RuleFailure(
                        rule_id=rule_id, error=type(exc).__name__, message=str(exc)
                    )
                )
                continue
            report.rules_processed += 1
            report.occurrences_created += len(created)

        self.retire_ended_contracts(today, company_id)
        logger.info(
            f"series_batch: horizon={horizon} rules={report.rules_processed} "
            f"created={report.occurrences_created} failed={len(report.errors)}"
        )
        return report

    def retire_ended_contracts(
        self, today: date, company_id: Optional[int] = None
    ) -> int:
        stmt = select(Contract).where(
            Contract.is_active.is_(True),
            Contract.end_date.isnot(None),
            Contract.end_date < today,
        )
        if company_id is not None:
            stmt = stmt.where(Contract.company_id == company_id)
        contracts = self.session.scalars(stmt).all()
        for contract in contracts:
            contract.is_active = False
            logger.info(
                f"contract_ended: contract_id={contract.id} end_date={contract.end_date}"
            )
        self.session.flush()
        return len(contracts)
