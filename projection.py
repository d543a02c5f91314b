import logging
from threading import Lock
from typing import Callable, Optional

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.orm import Session

from errors import NotFoundError
from models import BankAccount, OPEN_STATUSES, Transaction, TransactionType
from notifications import ChangeBridge, ChangeEvent
from schemas import AccountProjection

logger = logging.getLogger(__name__)

DEBIT_TYPES = (TransactionType.expense, TransactionType.transfer)
CREDIT_TYPES = (TransactionType.revenue, TransactionType.transfer)


def compute_projected_balance(
    session: Session, account_id: int, company_id: Optional[int] = None
) -> int:
    stmt = select(BankAccount.current_balance_cents).where(
        BankAccount.id == account_id, BankAccount.deleted_at.is_(None)
    )
    if company_id is not None:
        stmt = stmt.where(BankAccount.company_id == company_id)
    current = session.execute(stmt).scalar_one_or_none()
    if current is None:
        raise NotFoundError("Bank account not found")

    credits = case(
        (
            and_(
                Transaction.account_to_id == account_id,
                Transaction.type.in_(CREDIT_TYPES),
            ),
            Transaction.amount_cents,
        ),
        else_=0,
    )
    debits = case(
        (
            and_(
                Transaction.account_from_id == account_id,
                Transaction.type.in_(DEBIT_TYPES),
            ),
            Transaction.amount_cents,
        ),
        else_=0,
    )
    row = session.execute(
        select(
            func.coalesce(func.sum(credits), 0).label("credits"),
            func.coalesce(func.sum(debits), 0).label("debits"),
        ).where(
            Transaction.deleted_at.is_(None),
            Transaction.status.in_(OPEN_STATUSES),
            or_(
                Transaction.account_from_id == account_id,
                Transaction.account_to_id == account_id,
            ),
        )
    ).one()
    return int(current) + int(row.credits) - int(row.debits)


class BalanceProjector:
    """Projected balances per account, recomputed from the store on every read.

    Nothing about a balance survives a call. A change event only tells
    watchers which accounts to read again.
    """

    def __init__(self, bridge: Optional[ChangeBridge] = None) -> None:
        self._watchers: list[Callable[[set[int]], None]] = []
        self._lock = Lock()
        self._unsubscribers: list[Callable[[], None]] = []
        if bridge is not None:
            self.listen(bridge)

    def listen(self, bridge: ChangeBridge) -> None:
        for table in (Transaction.__tablename__, BankAccount.__tablename__):
            self._unsubscribers.append(bridge.subscribe(table, self.on_change))

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def watch(self, callback: Callable[[set[int]], None]) -> Callable[[], None]:
        """Call ``callback`` with the affected account ids after each change.

        An empty set means the event named no account and everything should be
        read again.
        """
        with self._lock:
            self._watchers.append(callback)

        def _unwatch() -> None:
            with self._lock:
                if callback in self._watchers:
                    self._watchers.remove(callback)

        return _unwatch

    @staticmethod
    def affected_accounts(change: ChangeEvent) -> set[int]:
        if change.table == BankAccount.__tablename__:
            account_ids = {change.row.get("id"), change.old_row.get("id")}
        else:
            account_ids = {
                row.get(key)
                for row in (change.row, change.old_row)
                for key in ("account_from_id", "account_to_id")
            }
        account_ids.discard(None)
        return account_ids

    def on_change(self, change: ChangeEvent) -> None:
        account_ids = self.affected_accounts(change)
        with self._lock:
            watchers = list(self._watchers)
        for callback in watchers:
            try:
                callback(set(account_ids))
            except Exception:
                logger.exception(
                    f"projection_watcher_failed: table={change.table} "
                    f"accounts={sorted(account_ids)}"
                )

    def project(
        self, session: Session, account_id: int, company_id: Optional[int] = None
    ) -> int:
        return compute_projected_balance(session, account_id, company_id)

    def rederive(
        self, session: Session, company_id: Optional[int] = None
    ) -> list[AccountProjection]:
        """Full scan of every active account and every open transaction."""
        account_stmt = (
            select(BankAccount)
            .where(BankAccount.deleted_at.is_(None), BankAccount.is_active.is_(True))
            .order_by(BankAccount.id)
            .execution_options(populate_existing=True)
        )
        txn_stmt = (
            select(Transaction)
            .where(
                Transaction.deleted_at.is_(None),
                Transaction.status.in_(OPEN_STATUSES),
            )
            .execution_options(populate_existing=True)
        )
        if company_id is not None:
            account_stmt = account_stmt.where(BankAccount.company_id == company_id)
            txn_stmt = txn_stmt.where(Transaction.company_id == company_id)

        balances: dict[int, dict[str, int]] = {
            account.id: {
                "current": account.current_balance_cents,
                "revenue": 0,
                "expense": 0,
            }
            for account in session.scalars(account_stmt).all()
        }
        for txn in session.scalars(txn_stmt).all():
            if txn.type in DEBIT_TYPES and txn.account_from_id in balances:
                balances[txn.account_from_id]["expense"] += txn.amount_cents
            if txn.type in CREDIT_TYPES and txn.account_to_id in balances:
                balances[txn.account_to_id]["revenue"] += txn.amount_cents

        return [
            AccountProjection(
                account_id=account_id,
                current_balance_cents=values["current"],
                pending_revenue_cents=values["revenue"],
                pending_expense_cents=values["expense"],
                projected_balance_cents=values["current"]
                + values["revenue"]
                - values["expense"],
            )
            for account_id, values in balances.items()
        ]
