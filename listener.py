"""Folds remote change events into the local store.

Merge rules are idempotent: replaying an event, or receiving the echo of a
write this client made itself, leaves the store untouched (same snapshot
object, same version).
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from typing import Dict, Iterator, List

from app_logging import get_logger, sync_context
from change_feed import INSERT, UPDATE, ChangeEvent, Subscription
from entities import ClubType, Message, Progress, Student
from store import EntityStore

_logger = get_logger('clubsync.listener')

# Tables the listener follows; classes, sessions and instructors are loaded
# once and otherwise changed only through this client.
WATCHED_TABLES = ('club_config', 'progress', 'messages', 'students')


def merge_progress(store: EntityStore, incoming: Progress) -> bool:
    """Replace the record with the same (student, session), or append it."""
    return store.progress.put(incoming)


def merge_message(store: EntityStore, kind: str, incoming: Message) -> bool:
    current = store.messages.get(incoming.id)
    if kind == INSERT:
        if current is not None:
            # Our own optimistic copy, or a replayed insert.
            return False
        return store.messages.put(incoming)
    if kind == UPDATE:
        if current is None:
            return False
        if current.is_read and not incoming.is_read:
            incoming = replace(incoming, is_read=True)
        return store.messages.put(incoming)
    return False


def merge_student(store: EntityStore, incoming: Student) -> bool:
    return store.students.put(incoming)


def merge_club_logo(store: EntityStore, payload: Dict[str, str]) -> bool:
    try:
        club = ClubType(payload['id'])
    except (KeyError, ValueError):
        _logger.warning('ignoring logo change for unknown club', extra={'payload': payload})
        return False
    return store.club_logos.put(club, payload['logo'])


class ChangeFeedListener:
    """Subscribes to the watched tables of a gateway on behalf of one store."""

    def __init__(self, store: EntityStore, gateway) -> None:
        self.store = store
        self.gateway = gateway
        self._subscriptions: List[Subscription] = []

    @property
    def active(self) -> bool:
        return bool(self._subscriptions)

    def start(self) -> None:
        """Subscribe every watched table. Must run on the engine loop."""
        if self._subscriptions:
            return
        try:
            for table in WATCHED_TABLES:
                self._subscriptions.append(self.gateway.subscribe(table, self.apply))
        except Exception:
            self.stop()
            raise
        _logger.info('listening', extra={'tables': list(WATCHED_TABLES)})

    def stop(self) -> None:
        """Drop all subscriptions together."""
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.unsubscribe()
        if subscriptions:
            _logger.info('stopped listening')

    @contextmanager
    def listening(self) -> Iterator['ChangeFeedListener']:
        self.start()
        try:
            yield self
        finally:
            self.stop()

    def apply(self, change: ChangeEvent) -> bool:
        """Merge one event; returns True when the store changed."""
        key = change.new.get('id') if isinstance(change.new, dict) else change.new.key
        with sync_context(change.table, key=key, op=change.kind):
            if change.table == 'progress':
                changed = merge_progress(self.store, change.new)
            elif change.table == 'messages':
                changed = merge_message(self.store, change.kind, change.new)
            elif change.table == 'students':
                changed = merge_student(self.store, change.new)
            elif change.table == 'club_config':
                changed = merge_club_logo(self.store, change.new)
            else:
                changed = False
            _logger.debug('change merged' if changed else 'change ignored')
        return changed
