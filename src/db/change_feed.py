"""
Change notification feed on top of the SQL store.
----

Every session that should report its writes is registered with `watch`.
Rows touched during a flush are collected, published to subscribers once the transaction commits
and dropped if it rolls back. Subscribers filter by table and (optionally) by a predicate on the row.

No ordering or delivery guarantees beyond "committed writes of watched sessions are announced".
Bulk UPDATE statements (atomic ledger deltas, settlement claims) bypass the ORM unit of work and are not announced.
"""

import logging
from copy import deepcopy
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable, Optional

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session
from sqlalchemy.orm.unitofwork import UOWTransaction

logger = logging.getLogger(__name__)

PENDING_KEY = "change_feed_pending"


class Operation(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class RowEvent:
    table: str
    operation: Operation
    row: dict[str, Any]


RowCallback = Callable[[RowEvent], None]
RowPredicate = Callable[[dict[str, Any]], bool]


@dataclass(eq=False)
class Subscription:
    table: str
    callback: RowCallback
    predicate: Optional[RowPredicate] = None
    feed: Optional["ChangeFeed"] = field(default=None, repr=False)

    def matches(self, row_event: RowEvent) -> bool:
        if row_event.table != self.table:
            return False
        return self.predicate is None or self.predicate(row_event.row)

    def unsubscribe(self) -> None:
        if self.feed is not None:
            self.feed.remove(self)
            self.feed = None


class ChangeFeed:
    """Fan-out of committed row changes to in-process subscribers."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def watch(self, db: Session) -> None:
        """Announce the committed writes of this session."""
        event.listen(db, "after_flush", self._collect)
        event.listen(db, "after_commit", self._publish_pending)
        event.listen(db, "after_rollback", self._discard_pending)

    def subscribe(
        self,
        table: str,
        callback: RowCallback,
        predicate: Optional[RowPredicate] = None,
    ) -> Subscription:
        subscription = Subscription(table, callback, predicate, feed=self)
        self._subscriptions.append(subscription)
        return subscription

    def remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, row_event: RowEvent) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.matches(row_event):
                continue
            try:
                subscription.callback(row_event)
            except Exception:
                # the remaining subscribers still get the event
                logger.exception(
                    "Subscriber failed on %s of %s", row_event.operation, row_event.table
                )

    # -- SESSION EVENT HANDLERS --
    def _collect(self, db: Session, flush_context: UOWTransaction) -> None:
        pending: list[RowEvent] = db.info.setdefault(PENDING_KEY, [])
        for operation, objects in (
            (Operation.INSERT, db.new),
            (Operation.UPDATE, db.dirty),
            (Operation.DELETE, db.deleted),
        ):
            for obj in objects:
                if operation == Operation.UPDATE and not db.is_modified(obj):
                    continue
                pending.append(_to_row_event(obj, operation))

    def _publish_pending(self, db: Session) -> None:
        pending: list[RowEvent] = db.info.pop(PENDING_KEY, [])
        for row_event in pending:
            self.publish(row_event)

    def _discard_pending(self, db: Session) -> None:
        db.info.pop(PENDING_KEY, None)


def _to_row_event(obj: Any, operation: Operation) -> RowEvent:
    """Only loaded column values: no SQL is emitted from inside the flush."""
    state = inspect(obj)
    loaded = state.dict
    row = {
        attr.key: deepcopy(loaded[attr.key])
        for attr in state.mapper.column_attrs
        if attr.key in loaded
    }
    return RowEvent(table=state.mapper.local_table.name, operation=operation, row=row)
