"""In-process change feed for the ``transactions`` and ``bank_accounts`` tables.

Session listeners record every flushed insert/update/delete of a watched row and
publish the batch once the surrounding database transaction commits. Delivery is
synchronous, so subscribers have seen a committed write before ``commit()``
returns. Rows touched inside a rolled-back savepoint may still be announced;
subscribers re-derive on every event, so that is harmless.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session, SessionTransaction

from models import BankAccount, Transaction

logger = logging.getLogger(__name__)

WATCHED_MODELS = (Transaction, BankAccount)
_PENDING_KEY = "pending_change_events"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: str
    row: dict[str, Any]
    old_row: dict[str, Any] = field(default_factory=dict)


Handler = Callable[[ChangeEvent], None]


def _snapshot(obj: object) -> dict[str, Any]:
    mapper = inspect(obj).mapper
    return {attr.key: getattr(obj, attr.key) for attr in mapper.column_attrs}


def _previous_values(obj: object) -> dict[str, Any]:
    state = inspect(obj)
    previous: dict[str, Any] = {}
    for attr in state.mapper.column_attrs:
        history = state.attrs[attr.key].history
        if history.deleted:
            previous[attr.key] = history.deleted[0]
    return previous


class ChangeBridge:
    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._lock = Lock()

    def subscribe(self, table: str, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._handlers[table].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers[table]:
                    self._handlers[table].remove(handler)

        return unsubscribe

    def publish(self, change: ChangeEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(change.table, ()))
        for handler in handlers:
            try:
                handler(change)
            except Exception:
                logger.exception(
                    f"change_handler_failed: table={change.table} "
                    f"event_type={change.event_type}"
                )

    def attach(self, target: Any) -> None:
        """Register on a Session, sessionmaker or the Session class."""
        event.listen(target, "after_flush", self._collect)
        event.listen(target, "after_commit", self._deliver)
        event.listen(target, "after_soft_rollback", self._discard)

    def detach(self, target: Any) -> None:
        event.remove(target, "after_flush", self._collect)
        event.remove(target, "after_commit", self._deliver)
        event.remove(target, "after_soft_rollback", self._discard)

    def _collect(self, session: Session, _flush_context) -> None:
        pending = session.info.setdefault(_PENDING_KEY, [])
        for event_type, objects in (
            ("INSERT", session.new),
            ("UPDATE", session.dirty),
            ("DELETE", session.deleted),
        ):
            for obj in objects:
                if not isinstance(obj, WATCHED_MODELS):
                    continue
                if event_type == "UPDATE" and not session.is_modified(obj):
                    continue
                pending.append(
                    ChangeEvent(
                        table=obj.__tablename__,
                        event_type=event_type,
                        row=_snapshot(obj),
                        old_row=_previous_values(obj) if event_type == "UPDATE" else {},
                    )
                )

    def _deliver(self, session: Session) -> None:
        changes = session.info.pop(_PENDING_KEY, [])
        for change in changes:
            self.publish(change)

    def _discard(self, session: Session, previous_transaction: SessionTransaction) -> None:
        if previous_transaction.parent is None:
            session.info.pop(_PENDING_KEY, None)


change_bridge = ChangeBridge()
