"""Realtime change notifications for the relational backend.

The feed hooks SQLAlchemy's mapper events to see every row the ORM inserts or
updates, holds the changes on the ORM session until the transaction commits,
and then hands one :class:`ChangeEvent` per row to the subscribers of that
table. Rolled-back changes are never published. Subscribers receive events on
their own asyncio loop (``call_soon_threadsafe``), in commit order.

Bulk ``UPDATE`` statements issued outside the ORM unit of work are not seen;
the only such write is the bulk class-icon assignment, whose table has no
subscribers.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session as OrmSession, object_session

from app_logging import get_logger
from models import TABLES, ClubConfigRow

INSERT = 'INSERT'
UPDATE = 'UPDATE'

_logger = get_logger('clubsync.feed')


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    kind: str
    # The new row as an entity record; for club_config a {"id", "logo"} dict.
    new: Any


def _row_payload(target: Any) -> Any:
    if isinstance(target, ClubConfigRow):
        return {'id': target.id, 'logo': target.logo}
    return target.to_entity()


class Subscription:
    """Handle returned by :meth:`ChangeFeed.subscribe`."""

    def __init__(self, feed: 'ChangeFeed', table: str,
                 loop: asyncio.AbstractEventLoop,
                 callback: Callable[[ChangeEvent], None]) -> None:
        self.feed = feed
        self.table = table
        self.loop = loop
        self.callback = callback
        self.active = True

    def deliver(self, change: ChangeEvent) -> None:
        self.loop.call_soon_threadsafe(self._run, change)

    def _run(self, change: ChangeEvent) -> None:
        if self.active:
            self.callback(change)

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self.feed._remove(self)

    def __repr__(self) -> str:
        return f'<Subscription {self.table} active={self.active}>'


class ChangeFeed:
    """Per-table broker of committed row changes for one engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._info_key = f'clubsync_changes_{id(self)}'
        self._attached = False

    # -- wiring --------------------------------------------------------------

    def attach(self) -> 'ChangeFeed':
        if self._attached:
            return self
        for model in TABLES.values():
            event.listen(model, 'after_insert', self._on_insert)
            event.listen(model, 'after_update', self._on_update)
        event.listen(OrmSession, 'after_commit', self._on_commit)
        event.listen(OrmSession, 'after_rollback', self._on_rollback)
        self._attached = True
        return self

    def detach(self) -> None:
        if not self._attached:
            return
        for model in TABLES.values():
            event.remove(model, 'after_insert', self._on_insert)
            event.remove(model, 'after_update', self._on_update)
        event.remove(OrmSession, 'after_commit', self._on_commit)
        event.remove(OrmSession, 'after_rollback', self._on_rollback)
        self._attached = False

    # -- subscriptions -------------------------------------------------------

    def subscribe(self, table: str, callback: Callable[[ChangeEvent], None],
                  loop: Optional[asyncio.AbstractEventLoop] = None) -> Subscription:
        if table not in TABLES:
            raise ValueError(f'unknown table {table!r}')
        subscription = Subscription(self, table, loop or asyncio.get_running_loop(), callback)
        with self._lock:
            self._subscribers.setdefault(table, []).append(subscription)
        _logger.info('subscribed', extra={'table': table})
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(subscription.table, [])
            if subscription in subs:
                subs.remove(subscription)
        _logger.info('unsubscribed', extra={'table': subscription.table})

    def subscriber_count(self, table: Optional[str] = None) -> int:
        with self._lock:
            if table is not None:
                return len(self._subscribers.get(table, []))
            return sum(len(subs) for subs in self._subscribers.values())

    def publish(self, change: ChangeEvent) -> None:
        with self._lock:
            subs = list(self._subscribers.get(change.table, []))
        for subscription in subs:
            try:
                subscription.deliver(change)
            except RuntimeError:
                # The subscriber's loop is closed; it will never read again.
                _logger.warning('dropping subscriber with closed loop',
                                extra={'table': change.table})
                subscription.unsubscribe()

    # -- SQLAlchemy hooks ----------------------------------------------------

    def _record(self, kind: str, connection, target: Any) -> None:
        if connection.engine is not self.engine:
            return
        session = object_session(target)
        if session is None:
            return
        change = ChangeEvent(target.__tablename__, kind, _row_payload(target))
        session.info.setdefault(self._info_key, []).append(change)

    def _on_insert(self, mapper, connection, target) -> None:
        self._record(INSERT, connection, target)

    def _on_update(self, mapper, connection, target) -> None:
        self._record(UPDATE, connection, target)

    def _on_commit(self, session) -> None:
        for change in session.info.pop(self._info_key, []):
            self.publish(change)

    def _on_rollback(self, session) -> None:
        session.info.pop(self._info_key, None)
