from datetime import date

import pytest
from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from database import Base, create_store_engine
from errors import NotFoundError
from models import BankAccount, Transaction, TransactionType
from notifications import ChangeBridge, ChangeEvent
from projection import BalanceProjector, compute_projected_balance
from schemas import OccurrenceChanges, TransactionIn
from services import InstallmentService, TransactionService

TODAY = date(2024, 1, 1)


def make_sessionmaker(url: str = "sqlite://"):
    engine = create_store_engine(url)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def add_account(session, name: str, balance: int) -> BankAccount:
    account = BankAccount(company_id=1, name=name, current_balance_cents=balance)
    session.add(account)
    session.commit()
    return account


def add_txn(session, kind: TransactionType, amount: int, **accounts):
    return TransactionService(session, company_id=1).create(
        TransactionIn(
            type=kind, amount_cents=amount, due_date=date(2024, 2, 1), **accounts
        ),
        today=TODAY,
    )


def test_projected_balance_counts_open_transactions() -> None:
    session = make_sessionmaker()()
    account = add_account(session, "Operating", 1_000)
    add_txn(session, TransactionType.expense, 200, account_from_id=account.id)
    add_txn(session, TransactionType.revenue, 50, account_to_id=account.id)
    cancelled = add_txn(
        session, TransactionType.expense, 300, account_from_id=account.id
    )
    TransactionService(session, company_id=1).cancel(cancelled.id)
    removed = add_txn(session, TransactionType.revenue, 70, account_to_id=account.id)
    TransactionService(session, company_id=1).soft_delete(removed.id)

    assert compute_projected_balance(session, account.id) == 850


def test_transfer_moves_money_between_accounts() -> None:
    session = make_sessionmaker()()
    source = add_account(session, "Operating", 1_000)
    target = add_account(session, "Savings", 0)
    add_txn(
        session,
        TransactionType.transfer,
        400,
        account_from_id=source.id,
        account_to_id=target.id,
    )

    assert compute_projected_balance(session, source.id) == 600
    assert compute_projected_balance(session, target.id) == 400


def test_settlement_keeps_projection_stable() -> None:
    session = make_sessionmaker()()
    account = add_account(session, "Operating", 1_000)
    txn = add_txn(session, TransactionType.expense, 200, account_from_id=account.id)

    TransactionService(session, company_id=1).settle(txn.id)

    assert account.current_balance_cents == 800
    assert compute_projected_balance(session, account.id) == 800


def test_unknown_account_is_not_found() -> None:
    session = make_sessionmaker()()
    with pytest.raises(NotFoundError):
        compute_projected_balance(session, 42)


def test_change_events_name_the_affected_accounts(tmp_path) -> None:
    Session = make_sessionmaker(f"sqlite:///{tmp_path / 'ledger.db'}")
    bridge = ChangeBridge()
    bridge.attach(Session)
    projector = BalanceProjector(bridge)
    notified: list[set[int]] = []
    projector.watch(notified.append)

    session = Session()
    account = add_account(session, "Operating", 1_000)
    service = InstallmentService(session, company_id=1, balance_projector=projector)
    assert service.get_projected_balance(account.id) == 1_000

    notified.clear()
    txn = add_txn(session, TransactionType.expense, 200, account_from_id=account.id)
    assert {account.id} in notified
    assert service.get_projected_balance(account.id) == 800

    notified.clear()
    service.resolve_edit(
        txn.id, "this", OccurrenceChanges(amount_cents=300), today=TODAY
    )
    assert {account.id} in notified
    assert service.get_projected_balance(account.id) == 700
    projector.close()


def test_projection_sees_writes_from_another_process(tmp_path) -> None:
    # Two sessionmakers with their own bridges stand in for two workers.
    url = f"sqlite:///{tmp_path / 'ledger.db'}"
    WorkerA = make_sessionmaker(url)
    WorkerB = make_sessionmaker(url)
    bridge_a = ChangeBridge()
    bridge_a.attach(WorkerA)
    projector_a = BalanceProjector(bridge_a)
    notified: list[set[int]] = []
    projector_a.watch(notified.append)

    session_a = WorkerA()
    account = add_account(session_a, "Operating", 1_000)
    service_a = InstallmentService(
        session_a, company_id=1, balance_projector=projector_a
    )
    assert service_a.get_projected_balance(account.id) == 1_000
    session_a.close()
    notified.clear()

    session_b = WorkerB()
    txn = add_txn(session_b, TransactionType.expense, 200, account_from_id=account.id)
    session_b.close()
    assert notified == []

    session_a = WorkerA()
    service_a = InstallmentService(
        session_a, company_id=1, balance_projector=projector_a
    )
    assert service_a.get_projected_balance(account.id) == 800
    session_a.close()

    # A bulk update skips the ORM flush and so the change feed too.
    session_b = WorkerB()
    session_b.execute(
        update(Transaction).where(Transaction.id == txn.id).values(amount_cents=450)
    )
    session_b.commit()
    session_b.close()

    session_a = WorkerA()
    service_a = InstallmentService(
        session_a, company_id=1, balance_projector=projector_a
    )
    assert service_a.get_projected_balance(account.id) == 550
    assert [p.projected_balance_cents for p in service_a.projections()] == [550]
    session_a.close()
    projector_a.close()


def test_rolled_back_writes_are_not_announced() -> None:
    Session = make_sessionmaker()
    bridge = ChangeBridge()
    bridge.attach(Session)
    seen: list[ChangeEvent] = []
    bridge.subscribe("bank_accounts", seen.append)

    session = Session()
    session.add(BankAccount(company_id=1, name="Scratch"))
    session.flush()
    session.rollback()
    assert seen == []

    add_account(session, "Operating", 10)
    assert [(e.table, e.event_type) for e in seen] == [("bank_accounts", "INSERT")]


def test_failing_subscriber_does_not_block_others() -> None:
    bridge = ChangeBridge()
    received: list[str] = []

    def broken(change: ChangeEvent) -> None:
        raise RuntimeError("boom")

    bridge.subscribe("transactions", broken)
    unsubscribe = bridge.subscribe(
        "transactions", lambda c: received.append(c.event_type)
    )
    change = ChangeEvent(table="transactions", event_type="UPDATE", row={"id": 1})
    bridge.publish(change)
    # Duplicate deliveries are harmless: subscribers only re-read.
    bridge.publish(change)
    unsubscribe()
    bridge.publish(change)

    assert received == ["UPDATE", "UPDATE"]


def test_projection_converges_with_full_scan() -> None:
    Session = make_sessionmaker()
    bridge = ChangeBridge()
    bridge.attach(Session)
    projector = BalanceProjector(bridge)
    session = Session()

    operating = add_account(session, "Operating", 5_000)
    savings = add_account(session, "Savings", 1_000)
    service = InstallmentService(session, company_id=1, balance_projector=projector)
    for account in (operating, savings):
        service.get_projected_balance(account.id)

    add_txn(session, TransactionType.revenue, 2_500, account_to_id=operating.id)
    moved = add_txn(
        session,
        TransactionType.transfer,
        700,
        account_from_id=operating.id,
        account_to_id=savings.id,
    )
    bill = add_txn(session, TransactionType.expense, 900, account_from_id=savings.id)
    TransactionService(session, company_id=1).settle(moved.id)
    TransactionService(session, company_id=1).cancel(bill.id)

    scanned = {p.account_id: p for p in service.projections()}
    for account in (operating, savings):
        assert service.get_projected_balance(account.id) == (
            scanned[account.id].projected_balance_cents
        )
    assert scanned[operating.id].projected_balance_cents == 5_000 - 700 + 2_500
    assert scanned[operating.id].pending_revenue_cents == 2_500
    assert scanned[savings.id].projected_balance_cents == 1_700
    assert scanned[savings.id].pending_expense_cents == 0


def test_projector_tells_watchers_about_old_and_new_accounts() -> None:
    projector = BalanceProjector()
    received: list[set[int]] = []

    def broken(account_ids: set[int]) -> None:
        raise RuntimeError("boom")

    projector.watch(broken)
    unwatch = projector.watch(received.append)
    projector.on_change(
        ChangeEvent(
            table="transactions",
            event_type="UPDATE",
            row={"account_from_id": 1, "account_to_id": None},
            old_row={"account_from_id": 2},
        )
    )
    projector.on_change(
        ChangeEvent(table="transactions", event_type="DELETE", row={})
    )
    unwatch()
    projector.on_change(
        ChangeEvent(table="bank_accounts", event_type="UPDATE", row={"id": 3})
    )

    assert received == [{1, 2}, set()]
