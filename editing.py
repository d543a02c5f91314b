"""Edits and cancellations that target one occurrence of a recurring series.

A series is a chain of rule segments. Editing ``this`` touches one row;
``this_and_future`` ends the current segment before the target and starts a new
one at the target; ``all`` rewrites the segment and its open occurrences.
Paid rows are history and are never rewritten.

When a segment's anchor or cadence changes, open occurrences that no longer sit
on the new cadence are cancelled, soft-deleted and released from their slot, and
the new cadence is backfilled up to the furthest date materialized before.
"""

import logging
from datetime import date, datetime
from typing import Any, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from errors import ConflictError, NotFoundError, ValidationError
from models import (
    OPEN_STATUSES,
    SETTLED_STATUSES,
    BankAccount,
    ContractKind,
    RecurrenceRule,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from recurrence import (
    SeriesGenerator,
    first_occurrence_on_or_after,
    local_today,
    occurrence_dates,
    validate_rule,
)
from schemas import EditScope, OccurrenceChanges

logger = logging.getLogger(__name__)

COPIED_FIELDS = ("amount_cents", "account_from_id", "account_to_id", "description")


def parse_scope(scope: Union[str, EditScope]) -> EditScope:
    try:
        return EditScope(scope)
    except ValueError as exc:
        raise ValidationError(f"Unknown edit scope: {scope!r}") from exc


class SeriesEditor:
    def __init__(
        self, session: Session, company_id: int, today: Optional[date] = None
    ) -> None:
        self.session = session
        self.company_id = company_id
        self.today = today or local_today()
        self.generator = SeriesGenerator(session)

    def get_occurrence(self, occurrence_id: int) -> Transaction:
        txn = self.session.get(Transaction, occurrence_id)
        if not txn or txn.company_id != self.company_id or txn.deleted_at is not None:
            raise NotFoundError("Transaction not found")
        return txn

    def resolve(
        self,
        occurrence_id: int,
        scope: Union[str, EditScope],
        changes: OccurrenceChanges,
    ) -> list[int]:
        scope = parse_scope(scope)
        target = self.get_occurrence(occurrence_id)
        if target.status in SETTLED_STATUSES:
            raise ConflictError(
                f"Transaction {target.id} is {target.status.value} and cannot be edited"
            )
        provided = self._provided(changes)
        self._check_accounts(provided)

        if target.rule is None:
            if scope != EditScope.this:
                raise ValidationError("Transaction is not part of a series")
            return self._edit_this(target, provided)
        if scope == EditScope.this:
            return self._edit_this(target, provided)
        if scope == EditScope.this_and_future:
            return self._edit_this_and_future(target, provided)
        return self._edit_all(target, provided)

    def cancel(self, occurrence_id: int, scope: Union[str, EditScope]) -> list[int]:
        scope = parse_scope(scope)
        target = self.get_occurrence(occurrence_id)
        if target.status in SETTLED_STATUSES:
            raise ConflictError(
                f"Transaction {target.id} is {target.status.value} and cannot be cancelled"
            )
        rule = target.rule
        if rule is None or scope == EditScope.this:
            if rule is None and scope != EditScope.this:
                raise ValidationError("Transaction is not part of a series")
            self._cancel_row(target)
            self.session.flush()
            return [target.id]

        if scope == EditScope.this_and_future:
            slot = self._slot(target)
            previous = self._last_slot_before(rule.id, slot)
            rows = self._rows(rule.id, since=slot, open_only=True)
            if previous is None:
                self._deactivate(rule)
            else:
                rule.end_date = previous
                contract = rule.contract
                if self._is_current_segment(rule) and (
                    contract.end_date is None or previous < contract.end_date
                ):
                    contract.end_date = previous
        else:
            rows = self._rows(rule.id, open_only=True)
            self._deactivate(rule)

        for row in rows:
            self._cancel_row(row)
        self.session.flush()
        logger.info(
            f"series_cancelled: rule_id={rule.id} scope={scope.value} "
            f"cancelled={len(rows)}"
        )
        return sorted(row.id for row in rows)

    def _edit_this(self, target: Transaction, provided: dict[str, Any]) -> list[int]:
        frequency = provided.pop("frequency", None)
        if frequency is not None and (
            target.rule is None or frequency != target.rule.frequency
        ):
            raise ValidationError(
                "Changing the frequency needs the this_and_future or all scope"
            )
        due_date = provided.pop("due_date", None)
        for field, value in provided.items():
            setattr(target, field, value)
        if due_date is not None:
            target.due_date = due_date
            target.status = self._open_status(due_date)
        self._check_binding(target.type, target.account_from_id, target.account_to_id)
        self.session.flush()
        return [target.id]

    def _edit_this_and_future(
        self, target: Transaction, provided: dict[str, Any]
    ) -> list[int]:
        rule = target.rule
        slot = self._slot(target)
        paid_after = self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.rule_id == rule.id,
                Transaction.occurrence_date > slot,
                Transaction.status == TransactionStatus.paid,
            )
        )
        if paid_after:
            raise ConflictError(
                "Later occurrences of this series are already paid; edit them individually"
            )

        previous = self._last_slot_before(rule.id, slot)
        if previous is None:
            # Nothing precedes the target, so the whole segment is the suffix.
            new_anchor = provided.get("due_date", rule.anchor_date)
            logger.info(f"series_edit_in_place: rule_id={rule.id} target={target.id}")
            return self._rewrite_segment(rule, target, provided, new_anchor)

        new_anchor = provided.get("due_date", slot)
        if new_anchor <= previous:
            raise ValidationError(
                f"The new series must start after {previous}, "
                "the last occurrence that stays on the current schedule"
            )
        furthest = (self._furthest_slot(rule.id) or slot) + (new_anchor - slot)
        successor = RecurrenceRule(
            company_id=rule.company_id,
            name=rule.name,
            description=rule.description,
            kind=rule.kind,
            amount_cents=rule.amount_cents,
            frequency=provided.get("frequency", rule.frequency),
            anchor_date=new_anchor,
            end_date=rule.end_date,
            is_active=rule.is_active,
            account_from_id=rule.account_from_id,
            account_to_id=rule.account_to_id,
            contract=rule.contract,
            previous_rule_id=rule.id,
        )
        for field in COPIED_FIELDS:
            if field in provided:
                setattr(successor, field, provided[field])
        if rule.total_installments is not None:
            consumed = len(self._rows(rule.id, before=slot))
            successor.total_installments = rule.total_installments - consumed
        validate_rule(successor)
        self.generator.bound_accounts(successor)

        rule.end_date = previous
        self.session.add(successor)
        self.session.flush()

        touched: set[int] = set()
        for row in self._rows(rule.id, since=slot):
            row.rule = successor
            touched.add(row.id)
            if row.status in OPEN_STATUSES:
                self._copy_fields(successor, row)
        self.session.flush()

        schedule_changed = (
            successor.anchor_date != slot or successor.frequency != rule.frequency
        )
        if schedule_changed:
            touched |= self._reschedule(
                successor, furthest, {target.id: successor.anchor_date}
            )
        touched |= self._backfill(successor, furthest)
        self._mirror_contract(successor)
        self.session.flush()
        logger.info(
            f"series_split: rule_id={rule.id} successor_id={successor.id} "
            f"ended_at={previous} anchor={successor.anchor_date} touched={len(touched)}"
        )
        return sorted(touched)

    def _edit_all(self, target: Transaction, provided: dict[str, Any]) -> list[int]:
        rule = target.rule
        new_anchor = rule.anchor_date
        if "due_date" in provided:
            new_anchor = rule.anchor_date + (provided["due_date"] - self._slot(target))
        return self._rewrite_segment(rule, target, provided, new_anchor)

    def _rewrite_segment(
        self,
        rule: RecurrenceRule,
        target: Transaction,
        provided: dict[str, Any],
        new_anchor: date,
    ) -> list[int]:
        new_frequency = provided.get("frequency", rule.frequency)
        shift = new_anchor - rule.anchor_date
        schedule_changed = bool(shift) or new_frequency != rule.frequency
        if schedule_changed and self._has_paid(rule.id):
            raise ConflictError(
                "Cannot reschedule a series with paid occurrences; "
                "use this_and_future from the first unpaid occurrence"
            )
        furthest = (self._furthest_slot(rule.id) or new_anchor) + shift

        rule.anchor_date = new_anchor
        rule.frequency = new_frequency
        if schedule_changed:
            rule.anchor_transaction_id = None
        for field in COPIED_FIELDS:
            if field in provided:
                setattr(rule, field, provided[field])
        validate_rule(rule)
        self.generator.bound_accounts(rule)

        touched: set[int] = set()
        for row in self._rows(rule.id, open_only=True):
            self._copy_fields(rule, row)
            touched.add(row.id)
        self.session.flush()

        if schedule_changed:
            preferred = {target.id: self._slot(target) + shift}
            touched |= self._reschedule(rule, furthest, preferred)
        touched |= self._backfill(rule, furthest)
        self._mirror_contract(rule)
        self.session.flush()
        return sorted(touched)

    def _reschedule(
        self, rule: RecurrenceRule, until: date, preferred: dict[int, date]
    ) -> set[int]:
        wanted_dates = list(occurrence_dates(rule, max(until, rule.anchor_date)))
        if not wanted_dates:
            raise ValidationError(f"Rule {rule.id} has no occurrences left to schedule")
        wanted = set(wanted_dates)
        occupied = self.generator.materialized_dates(rule.id)
        rows = self._rows(rule.id, open_only=True)
        by_slot = {row.occurrence_date: row for row in rows}
        touched: set[int] = set()

        for row in rows:
            slot = preferred.get(row.id)
            if slot is None:
                continue
            if slot not in wanted:
                # Off the new cadence: land on the next date that is on it.
                later = [d for d in wanted_dates if d >= slot]
                slot = later[0] if later else wanted_dates[-1]
            if row.occurrence_date == slot:
                continue
            occupant = by_slot.get(slot)
            if occupant is None and slot in occupied:
                raise ConflictError(
                    f"{slot} already holds a settled or cancelled occurrence of this series"
                )
            if occupant is not None:
                self._release(occupant)
                touched.add(occupant.id)
                # The slot must be free in the database before it is reused.
                self.session.flush()
            row.occurrence_date = slot
            row.due_date = slot
            row.status = self._open_status(slot)
            touched.add(row.id)

        for row in rows:
            if (
                row.id in preferred
                or row.occurrence_date is None
                or row.occurrence_date in wanted
            ):
                continue
            self._release(row)
            touched.add(row.id)
        self.session.flush()
        return touched

    def _release(self, row: Transaction) -> None:
        self._cancel_row(row)
        row.occurrence_date = None

    def _backfill(self, rule: RecurrenceRule, until: date) -> set[int]:
        horizon = until
        upcoming = first_occurrence_on_or_after(rule, self.today)
        if upcoming is not None and upcoming > horizon:
            horizon = upcoming
        created = self.generator.generate(rule, horizon, today=self.today)
        return {txn.id for txn in created}

    def _mirror_contract(self, rule: RecurrenceRule) -> None:
        if not self._is_current_segment(rule):
            return
        contract = rule.contract
        contract.amount_cents = rule.amount_cents
        contract.frequency = rule.frequency
        contract.description = rule.description
        if contract.kind == ContractKind.expense:
            contract.bank_account_id = rule.account_from_id
        else:
            contract.bank_account_id = rule.account_to_id

    def _deactivate(self, rule: RecurrenceRule) -> None:
        rule.is_active = False
        if self._is_current_segment(rule):
            rule.contract.is_active = False

    @staticmethod
    def _is_current_segment(rule: RecurrenceRule) -> bool:
        return rule.contract is not None and rule.contract.current_rule is rule

    def _cancel_row(self, row: Transaction) -> None:
        row.status = TransactionStatus.cancelled
        row.deleted_at = datetime.utcnow()

    def _copy_fields(self, source: RecurrenceRule, row: Transaction) -> None:
        row.amount_cents = source.amount_cents
        row.description = source.description or source.name
        if row.type in (TransactionType.expense, TransactionType.transfer):
            row.account_from_id = source.account_from_id
        if row.type in (TransactionType.revenue, TransactionType.transfer):
            row.account_to_id = source.account_to_id

    def _open_status(self, due_date: date) -> TransactionStatus:
        if due_date < self.today:
            return TransactionStatus.overdue
        return TransactionStatus.pending

    @staticmethod
    def _slot(target: Transaction) -> date:
        return target.occurrence_date or target.due_date

    @staticmethod
    def _provided(changes: OccurrenceChanges) -> dict[str, Any]:
        return {
            field: value
            for field, value in changes.model_dump(exclude_unset=True).items()
            if value is not None
        }

    def _check_accounts(self, provided: dict[str, Any]) -> None:
        for field in ("account_from_id", "account_to_id"):
            account_id = provided.get(field)
            if account_id is None:
                continue
            account = self.session.get(BankAccount, account_id)
            if (
                not account
                or account.company_id != self.company_id
                or account.deleted_at is not None
                or not account.is_active
            ):
                raise ValidationError(f"Bank account {account_id} is not usable")

    @staticmethod
    def _check_binding(
        kind: TransactionType,
        account_from_id: Optional[int],
        account_to_id: Optional[int],
    ) -> None:
        if kind in (TransactionType.expense, TransactionType.transfer) and not account_from_id:
            raise ValidationError(f"A {kind.value} needs a debit account")
        if kind in (TransactionType.revenue, TransactionType.transfer) and not account_to_id:
            raise ValidationError(f"A {kind.value} needs a credit account")

    def _rows(
        self,
        rule_id: int,
        *,
        since: Optional[date] = None,
        before: Optional[date] = None,
        open_only: bool = False,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.rule_id == rule_id,
                Transaction.occurrence_date.isnot(None),
            )
            .order_by(Transaction.occurrence_date)
        )
        if since is not None:
            stmt = stmt.where(Transaction.occurrence_date >= since)
        if before is not None:
            stmt = stmt.where(Transaction.occurrence_date < before)
        if open_only:
            stmt = stmt.where(
                Transaction.status.in_(OPEN_STATUSES),
                Transaction.deleted_at.is_(None),
            )
        return list(self.session.scalars(stmt).all())

    def _last_slot_before(self, rule_id: int, slot: date) -> Optional[date]:
        return self.session.scalar(
            select(func.max(Transaction.occurrence_date)).where(
                Transaction.rule_id == rule_id,
                Transaction.occurrence_date < slot,
            )
        )

    def _furthest_slot(self, rule_id: int) -> Optional[date]:
        return self.session.scalar(
            select(func.max(Transaction.occurrence_date)).where(
                Transaction.rule_id == rule_id
            )
        )

    def _has_paid(self, rule_id: int) -> bool:
        count = self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.rule_id == rule_id,
                Transaction.status == TransactionStatus.paid,
            )
        )
        return bool(count)
