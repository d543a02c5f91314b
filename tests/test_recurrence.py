from datetime import date, datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from database import Base, create_store_engine
from errors import ValidationError
from models import (
    BankAccount,
    Contract,
    ContractKind,
    Frequency,
    RecurrenceRule,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from recurrence import SeriesGenerator, add_months, occurrence_dates, step


def make_session():
    engine = create_store_engine("sqlite://")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_rule(
    session,
    *,
    anchor: date = date(2024, 1, 15),
    frequency: Frequency = Frequency.monthly,
    total_installments=None,
    end_date=None,
    account_id=None,
) -> RecurrenceRule:
    if account_id is None:
        account = BankAccount(company_id=1, name="Operating")
        session.add(account)
        session.flush()
        account_id = account.id
    rule = RecurrenceRule(
        company_id=1,
        name="Rent",
        kind=TransactionType.expense,
        amount_cents=20_000,
        frequency=frequency,
        anchor_date=anchor,
        end_date=end_date,
        account_from_id=account_id,
        total_installments=total_installments,
    )
    session.add(rule)
    session.flush()
    return rule


def occurrences(session, rule_id: int) -> list[date]:
    stmt = (
        select(Transaction.occurrence_date)
        .where(Transaction.rule_id == rule_id)
        .order_by(Transaction.occurrence_date)
    )
    return list(session.scalars(stmt).all())


def test_step_snaps_to_short_month_ends() -> None:
    anchor = date(2024, 1, 31)
    assert [step(Frequency.monthly, anchor, k) for k in range(5)] == [
        date(2024, 1, 31),
        date(2024, 2, 29),
        date(2024, 3, 31),
        date(2024, 4, 30),
        date(2024, 5, 31),
    ]
    assert step(Frequency.annual, date(2024, 2, 29), 1) == date(2025, 2, 28)
    assert step(Frequency.weekly, date(2024, 1, 1), 2) == date(2024, 1, 15)
    assert add_months(date(2024, 11, 30), 3, desired_day=30) == date(2025, 2, 28)


def test_occurrence_dates_respects_end_date() -> None:
    rule = RecurrenceRule(
        frequency=Frequency.quarterly,
        anchor_date=date(2024, 1, 10),
        end_date=date(2024, 7, 9),
    )
    assert list(occurrence_dates(rule, date(2025, 1, 1))) == [
        date(2024, 1, 10),
        date(2024, 4, 10),
    ]


def test_horizon_is_inclusive() -> None:
    session = make_session()
    rule = make_rule(session)
    generator = SeriesGenerator(session)

    created = generator.generate(rule, date(2024, 4, 1), today=date(2024, 1, 1))
    assert [t.occurrence_date for t in created] == [
        date(2024, 1, 15),
        date(2024, 2, 15),
        date(2024, 3, 15),
    ]

    created = generator.generate(rule, date(2024, 4, 15), today=date(2024, 1, 1))
    assert [t.occurrence_date for t in created] == [date(2024, 4, 15)]
    assert rule.last_generated_date == date(2024, 4, 15)


def test_generate_is_idempotent() -> None:
    session = make_session()
    rule = make_rule(session)
    generator = SeriesGenerator(session)

    first = generator.generate(rule, date(2024, 6, 30), today=date(2024, 1, 1))
    second = generator.generate(rule, date(2024, 6, 30), today=date(2024, 1, 1))
    session.commit()

    assert len(first) == 6
    assert second == []
    assert len(occurrences(session, rule.id)) == 6
    assert rule.anchor_transaction_id == first[0].id


def test_generated_rows_copy_rule_and_mark_past_dates_overdue() -> None:
    session = make_session()
    rule = make_rule(session)
    created = SeriesGenerator(session).generate(
        rule, date(2024, 3, 31), today=date(2024, 2, 20)
    )

    assert [t.status for t in created] == [
        TransactionStatus.overdue,
        TransactionStatus.overdue,
        TransactionStatus.pending,
    ]
    for txn in created:
        assert txn.amount_cents == 20_000
        assert txn.type == TransactionType.expense
        assert txn.account_from_id == rule.account_from_id
        assert txn.account_to_id is None
        assert txn.due_date == txn.occurrence_date
        assert txn.description == "Rent"


def test_soft_deleted_occurrence_is_not_recreated() -> None:
    session = make_session()
    rule = make_rule(session)
    generator = SeriesGenerator(session)
    created = generator.generate(rule, date(2024, 3, 31), today=date(2024, 1, 1))

    created[1].status = TransactionStatus.cancelled
    created[1].deleted_at = datetime(2024, 1, 2)
    session.flush()

    assert generator.generate(rule, date(2024, 3, 31), today=date(2024, 1, 1)) == []
    assert len(occurrences(session, rule.id)) == 3


def test_gaps_are_filled() -> None:
    session = make_session()
    rule = make_rule(session)
    generator = SeriesGenerator(session)
    created = generator.generate(rule, date(2024, 3, 31), today=date(2024, 1, 1))

    session.delete(created[1])
    session.flush()

    refill = generator.generate(rule, date(2024, 3, 31), today=date(2024, 1, 1))
    assert [t.occurrence_date for t in refill] == [date(2024, 2, 15)]


def test_total_installments_caps_generation_and_completes_contract() -> None:
    session = make_session()
    account = BankAccount(company_id=1, name="Operating")
    session.add(account)
    session.flush()
    contract = Contract(
        company_id=1,
        name="Laptop lease",
        kind=ContractKind.expense,
        amount_cents=5_000,
        frequency=Frequency.monthly,
        start_date=date(2024, 1, 1),
        total_installments=3,
        bank_account_id=account.id,
    )
    rule = RecurrenceRule(
        company_id=1,
        name="Laptop lease",
        kind=TransactionType.expense,
        amount_cents=5_000,
        frequency=Frequency.monthly,
        anchor_date=date(2024, 1, 1),
        account_from_id=account.id,
        total_installments=3,
        contract=contract,
    )
    session.add_all([contract, rule])
    session.flush()

    created = SeriesGenerator(session).generate(
        rule, date(2024, 12, 31), today=date(2024, 1, 1)
    )

    assert [t.occurrence_date for t in created] == [
        date(2024, 1, 1),
        date(2024, 2, 1),
        date(2024, 3, 1),
    ]
    assert all(t.contract_id == contract.id for t in created)
    assert contract.is_active is False
    assert contract.last_generated_date == date(2024, 3, 1)


def test_missing_account_is_a_validation_error() -> None:
    session = make_session()
    rule = RecurrenceRule(
        company_id=1,
        name="Orphan",
        kind=TransactionType.revenue,
        amount_cents=1_000,
        frequency=Frequency.monthly,
        anchor_date=date(2024, 1, 1),
    )
    session.add(rule)
    session.flush()

    with pytest.raises(ValidationError):
        SeriesGenerator(session).generate(rule, date(2024, 3, 1))
    assert occurrences(session, rule.id) == []


def test_deactivated_account_is_not_usable() -> None:
    session = make_session()
    rule = make_rule(session)
    account = session.get(BankAccount, rule.account_from_id)
    account.is_active = False
    session.flush()

    with pytest.raises(ValidationError):
        SeriesGenerator(session).generate(rule, date(2024, 3, 1))


def test_unique_slot_constraint() -> None:
    session = make_session()
    rule = make_rule(session)
    SeriesGenerator(session).generate(rule, date(2024, 1, 31), today=date(2024, 1, 1))
    session.commit()

    session.add(
        Transaction(
            company_id=1,
            rule_id=rule.id,
            occurrence_date=date(2024, 1, 15),
            due_date=date(2024, 1, 15),
            type=TransactionType.expense,
            amount_cents=20_000,
            account_from_id=rule.account_from_id,
        )
    )
    with pytest.raises(IntegrityError):
        session.commit()
    session.rollback()


def test_slot_taken_by_concurrent_run_is_skipped() -> None:
    session = make_session()
    rule = make_rule(session)
    generator = SeriesGenerator(session)

    real_dates = generator.materialized_dates
    reads: list[int] = []

    def stale_first_read(rule_id: int) -> set[date]:
        # The first read misses the slot a concurrent run is about to commit.
        reads.append(rule_id)
        return set() if len(reads) == 1 else real_dates(rule_id)

    session.add(
        Transaction(
            company_id=1,
            rule_id=rule.id,
            occurrence_date=date(2024, 2, 15),
            due_date=date(2024, 2, 15),
            type=TransactionType.expense,
            amount_cents=20_000,
            account_from_id=rule.account_from_id,
        )
    )
    session.flush()
    generator.materialized_dates = stale_first_read

    created = generator.generate(rule, date(2024, 3, 31), today=date(2024, 1, 1))
    assert [t.occurrence_date for t in created] == [date(2024, 1, 15), date(2024, 3, 15)]
    assert len(occurrences(session, rule.id)) == 3


def test_generate_all_isolates_failing_rules() -> None:
    session = make_session()
    good = make_rule(session)
    broken = make_rule(session, account_id=good.account_from_id)
    broken.account_from_id = None
    session.flush()

    report = SeriesGenerator(session).generate_all(
        date(2024, 2, 29), today=date(2024, 1, 1)
    )
    session.commit()

    assert report.rules_processed == 1
    assert report.occurrences_created == 2
    assert [failure.rule_id for failure in report.errors] == [broken.id]
    assert report.errors[0].error == "ValidationError"
    assert len(occurrences(session, good.id)) == 2
    assert occurrences(session, broken.id) == []


def test_generate_all_skips_inactive_and_opted_out_contracts() -> None:
    session = make_session()
    account = BankAccount(company_id=1, name="Operating")
    session.add(account)
    session.flush()
    rules = []
    for name, active, auto in (
        ("on", True, True),
        ("off", False, True),
        ("manual", True, False),
    ):
        contract = Contract(
            company_id=1,
            name=name,
            kind=ContractKind.revenue,
            amount_cents=1_000,
            frequency=Frequency.monthly,
            start_date=date(2024, 1, 1),
            is_active=active,
            auto_generate=auto,
            bank_account_id=account.id,
        )
        rule = RecurrenceRule(
            company_id=1,
            name=name,
            kind=TransactionType.revenue,
            amount_cents=1_000,
            frequency=Frequency.monthly,
            anchor_date=date(2024, 1, 1),
            account_to_id=account.id,
            contract=contract,
        )
        session.add_all([contract, rule])
        rules.append(rule)
    session.flush()

    report = SeriesGenerator(session).generate_all(
        date(2024, 1, 31), today=date(2024, 1, 1)
    )

    assert report.rules_processed == 1
    count = session.scalar(select(func.count(Transaction.id)))
    assert count == 1
    assert occurrences(session, rules[0].id) == [date(2024, 1, 1)]


def test_ended_contracts_are_retired() -> None:
    session = make_session()
    account = BankAccount(company_id=1, name="Operating")
    session.add(account)
    session.flush()
    contract = Contract(
        company_id=1,
        name="Pilot",
        kind=ContractKind.revenue,
        amount_cents=1_000,
        frequency=Frequency.monthly,
        start_date=date(2024, 1, 1),
        end_date=date(2024, 2, 1),
        bank_account_id=account.id,
    )
    session.add(contract)
    session.flush()

    retired = SeriesGenerator(session).retire_ended_contracts(date(2024, 3, 1))
    assert retired == 1
    assert contract.is_active is False
