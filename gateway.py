"""Typed reads and writes against the relational backend.

Every public method is a coroutine. The blocking SQLAlchemy work runs on a
single dedicated worker thread inside a Flask application context, so writes
from one client reach the database in the order they were issued and never
share a connection concurrently. Each call is bounded by ``timeout`` seconds.

Reads never raise: an unreachable or failing backend yields an empty result
and a log line, and a row that does not convert to a record is logged and
left out. Writes raise, and the caller decides what to do with the
failure (the coordinator logs it and keeps its local state).
"""

from __future__ import annotations

import asyncio
import contextvars
import functools
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping

from flask import Flask
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app_logging import GatewayTimer, get_logger, sync_context
from change_feed import ChangeEvent, ChangeFeed, Subscription
from db_utils import probe, retry_with_backoff
from entities import (ClassLevel, ClubType, Icon, Instructor, InstructorRole, Message,
                      Progress, Session, Student, icon_to_dict)
from models import (ClassRow, ClubConfigRow, InstructorRow, MessageRow, ProgressRow,
                    SessionRow, StudentRow, db)

_logger = get_logger('clubsync.gateway')


def remote_read(table: str, empty: Callable[[], Any] = list):
    """Run a blocking read remotely; failures degrade to ``empty()``."""

    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(self: 'RemoteGateway', *args):
            with sync_context(table, op='fetch'):
                try:
                    return await self._run(fn, self, *args)
                except (SQLAlchemyError, asyncio.TimeoutError) as exc:
                    _logger.warning('remote read failed', extra={'error': repr(exc)})
                    return empty()
        return wrapper
    return decorator


def remote_write(table: str):
    """Run a blocking write remotely; failures propagate to the caller."""

    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(self: 'RemoteGateway', *args):
            with sync_context(table, op=fn.__name__):
                return await self._run(fn, self, *args)
        return wrapper
    return decorator


class RemoteGateway:
    """One operation family per table of the backend bound to ``app``."""

    def __init__(self, app: Flask, timeout: float = 10.0, connect_attempts: int = 2) -> None:
        self.app = app
        self.timeout = timeout
        self.connect_attempts = connect_attempts
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='gateway')
        with app.app_context():
            self.feed = ChangeFeed(db.engine).attach()

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        ctx = contextvars.copy_context()
        future = loop.run_in_executor(self._executor, ctx.run, self._in_app_context, fn, args)
        return await asyncio.wait_for(future, self.timeout)

    def _in_app_context(self, fn: Callable[..., Any], args: tuple) -> Any:
        with self.app.app_context():
            timer = GatewayTimer()
            try:
                with timer:
                    return fn(*args)
            except SQLAlchemyError:
                db.session.rollback()
                raise
            finally:
                _logger.debug('gateway call', extra={'call': fn.__name__,
                                                     'db_time_ms': timer.elapsed_ms})

    def subscribe(self, table: str, callback: Callable[[ChangeEvent], None]) -> Subscription:
        return self.feed.subscribe(table, callback)

    def close(self) -> None:
        self.feed.detach()
        self._executor.shutdown(wait=True)

    # -- connectivity ---------------------------------------------------------

    async def check_connection(self) -> bool:
        """Read probe against the classes table."""
        try:
            await self._run(self._probe)
            return True
        except (SQLAlchemyError, asyncio.TimeoutError) as exc:
            _logger.warning('connectivity probe failed', extra={'error': repr(exc)})
            return False

    def _probe(self) -> None:
        def _check() -> None:
            with db.engine.connect() as connection:
                probe(connection)

        retry_with_backoff(_check, attempts=self.connect_attempts)

    # -- classes -------------------------------------------------------------

    @remote_read('classes')
    def fetch_classes(self) -> List[ClassLevel]:
        return _entities(ClassRow.query.order_by(ClassRow.age))

    @remote_write('classes')
    def upsert_class(self, cls: ClassLevel) -> None:
        _upsert_by_id(ClassRow, cls)

    @remote_write('classes')
    def update_all_class_icons(self, club: ClubType, icon: Icon) -> int:
        """Assign ``icon`` to every class of ``club``; returns the row count."""
        tagged = icon_to_dict(icon)
        count = ClassRow.query.filter_by(club=club.value).update(
            {'icon_kind': tagged['kind'], 'icon_value': tagged['value']})
        db.session.commit()
        return count

    # -- students ------------------------------------------------------------

    @remote_read('students')
    def fetch_students(self) -> List[Student]:
        return _entities(StudentRow.query)

    @remote_write('students')
    def upsert_student(self, student: Student) -> None:
        _upsert_by_id(StudentRow, student)

    # -- sessions ------------------------------------------------------------

    @remote_read('sessions')
    def fetch_sessions(self) -> List[Session]:
        return _entities(SessionRow.query)

    @remote_write('sessions')
    def upsert_session(self, session: Session) -> None:
        _upsert_by_id(SessionRow, session)

    # -- progress ------------------------------------------------------------

    @remote_read('progress')
    def fetch_progress(self) -> List[Progress]:
        return _entities(ProgressRow.query)

    @remote_write('progress')
    def upsert_progress(self, prog: Progress) -> None:
        """Insert, or update the row already held for (student_id, session_id)."""
        try:
            _upsert_progress(prog)
        except IntegrityError:
            # Another writer inserted the pair first; the unique constraint
            # turned our insert into a conflict, so update their row instead.
            db.session.rollback()
            _upsert_progress(prog)

    # -- messages ------------------------------------------------------------

    @remote_read('messages')
    def fetch_messages(self) -> List[Message]:
        return _entities(MessageRow.query.order_by(MessageRow.timestamp))

    @remote_write('messages')
    def send_message(self, message: Message) -> None:
        db.session.add(MessageRow(id=message.id, sender_id=message.sender_id,
                                  receiver_id=message.receiver_id, content=message.content,
                                  timestamp=message.timestamp, is_read=message.is_read))
        db.session.commit()

    @remote_write('messages')
    def mark_message_as_read(self, message_id: str) -> bool:
        row = db.session.get(MessageRow, message_id)
        if row is None:
            _logger.warning('message to mark as read is not stored remotely',
                            extra={'message_id': message_id})
            return False
        if not row.is_read:
            row.is_read = True
            db.session.commit()
        return True

    # -- instructors ---------------------------------------------------------

    @remote_read('instructors')
    def fetch_instructors(self) -> List[Instructor]:
        return _entities(InstructorRow.query)

    @remote_write('instructors')
    def sync_instructors(self, instructors: Iterable[Instructor]) -> None:
        """Make the table mirror ``instructors``.

        Rows missing from the list are deleted, except ADMIN rows, which are
        never removed by a bulk sync.
        """
        instructors = list(instructors)
        keep = {ins.id for ins in instructors}
        stale = InstructorRow.query.filter(InstructorRow.id.notin_(keep),
                                           InstructorRow.role != InstructorRole.ADMIN.value)
        for row in stale.all():
            db.session.delete(row)
        # Deletions first so a username can move to a new id in one sync.
        db.session.flush()
        for ins in instructors:
            row = db.session.get(InstructorRow, ins.id)
            if row is None:
                row = InstructorRow(id=ins.id)
                db.session.add(row)
            row.assign(ins)
        db.session.commit()

    # -- club logos ----------------------------------------------------------

    @remote_read('club_config', empty=dict)
    def fetch_club_logos(self) -> Dict[ClubType, str]:
        logos = {}
        for row in ClubConfigRow.query.all():
            try:
                logos[ClubType(row.id)] = row.logo
            except ValueError:
                _logger.warning('ignoring logo of unknown club', extra={'club': row.id})
        return logos

    @remote_write('club_config')
    def update_club_logos(self, logos: Mapping[ClubType, str]) -> None:
        now = datetime.now(timezone.utc)
        for club, logo in logos.items():
            row = db.session.get(ClubConfigRow, club.value)
            if row is None:
                row = ClubConfigRow(id=club.value, logo=logo)
                db.session.add(row)
            row.logo = logo
            row.updated_at = now
        db.session.commit()


def _entities(query) -> list:
    """Convert rows one by one; a row that does not make a valid record is skipped."""
    records = []
    for row in query.all():
        try:
            records.append(row.to_entity())
        except (KeyError, TypeError, ValueError) as exc:
            _logger.warning('skipping malformed row',
                            extra={'row_id': getattr(row, 'id', None), 'error': repr(exc)})
    return records


def _upsert_by_id(model, record) -> None:
    row = db.session.get(model, record.id)
    if row is None:
        row = model(id=record.id)
        db.session.add(row)
    row.assign(record)
    db.session.commit()


def _upsert_progress(prog: Progress) -> None:
    row = ProgressRow.query.filter_by(student_id=prog.student_id,
                                      session_id=prog.session_id).first()
    if row is None:
        row = ProgressRow(student_id=prog.student_id, session_id=prog.session_id)
        db.session.add(row)
    row.assign(prog)
    db.session.commit()


__all__ = ['RemoteGateway']
