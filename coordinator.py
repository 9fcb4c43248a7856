"""Local-first mutations with background push to the backend.

Every mutation goes through the same three steps:

1. compute the next snapshot of a collection, either from a replacement
   sequence or from a function of the previous snapshot;
2. commit it to the store synchronously, so readers see it at once;
3. when connected, diff previous against next and push every changed or added
   record as its own fire-and-forget write. Instructors and club logos are
   small, so they are pushed whole in one write. A failed or timed-out push
   is logged and dropped; the local state is never rolled back.

Remote edits made elsewhere come back through the change-feed listener. Two
devices editing the same record converge on whichever upsert reached the
backend last.

Mutators must be called on the engine's event loop while connected, because
that is where pushes are scheduled. Offline they are plain synchronous calls.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import date
from enum import Enum
from typing import (Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Mapping,
                    Optional, Sequence, Set, Tuple, TypeVar, Union)

import progress as calc
from app_logging import get_logger, sync_context
from credentials import CredentialVerifier, generate_temporary_password
from entities import (ADMIN_CHANNEL, ClassLevel, ClubType, EmergencyContact, Icon,
                      Instructor, InstructorRole, Message, Progress, Session, Student,
                      Subject, derive_age, new_id, utc_now_iso)
from listener import ChangeFeedListener
from local_cache import INSTRUCTORS, LocalCache
from store import DEFAULT_LOGOS, Collection, EntityStore

T = TypeVar('T')
Update = Union[Iterable[T], Callable[[Tuple[T, ...]], Iterable[T]]]

_logger = get_logger('clubsync.sync')


class DbStatus(str, Enum):
    LOADING = 'loading'
    CONNECTED = 'connected'
    ERROR = 'error'


class UnknownEntityError(LookupError):
    """A mutation referenced a student, session, class or record that is not loaded."""


class AdminDeletionError(PermissionError):
    """Staff members with the ADMIN role cannot be deleted."""


def changed_records(previous: Sequence[T], following: Sequence[T]) -> List[T]:
    """Records of ``following`` that are new or differ from ``previous``."""
    before: Dict[Hashable, T] = {record.key: record for record in previous}
    return [record for record in following if before.get(record.key) != record]


class SyncCoordinator:
    def __init__(self, store: EntityStore, gateway, listener: Optional[ChangeFeedListener] = None,
                 credentials: Optional[CredentialVerifier] = None,
                 cache: Optional[LocalCache] = None) -> None:
        self.store = store
        self.gateway = gateway
        self.listener = listener or ChangeFeedListener(store, gateway)
        self.credentials = credentials or CredentialVerifier()
        self.cache = cache
        self.status = DbStatus.LOADING
        self._pending: Set[asyncio.Task] = set()

    @property
    def online(self) -> bool:
        return self.status is DbStatus.CONNECTED

    # -- lifecycle -----------------------------------------------------------

    async def load(self) -> DbStatus:
        """Probe the backend, pull every collection, then start listening.

        Remote results only replace local data when they are non-empty, so a
        reachable but empty backend never wipes the seed the device started with.
        """
        self.status = DbStatus.LOADING
        self.listener.stop()
        if not await self.gateway.check_connection():
            self.go_offline('connectivity probe failed')
            return self.status
        try:
            (sessions, students, classes, progress, messages, instructors,
             logos) = await asyncio.gather(
                self.gateway.fetch_sessions(),
                self.gateway.fetch_students(),
                self.gateway.fetch_classes(),
                self.gateway.fetch_progress(),
                self.gateway.fetch_messages(),
                self.gateway.fetch_instructors(),
                self.gateway.fetch_club_logos(),
            )
        except Exception:
            _logger.exception('initial load failed')
            self.go_offline('initial load failed')
            return self.status

        for collection, records in ((self.store.sessions, sessions),
                                    (self.store.students, students),
                                    (self.store.classes, classes),
                                    (self.store.progress, progress),
                                    (self.store.messages, messages)):
            if records:
                collection.replace(records)
        if instructors:
            self.store.instructors.replace(_with_admin(instructors, self.store.instructors))
            self._cache_instructors()
        if logos:
            self.store.club_logos.replace({**self.store.club_logos.snapshot(), **logos})

        self.status = DbStatus.CONNECTED
        self.listener.start()
        _logger.info('connected', extra={'students': len(self.store.students),
                                         'sessions': len(self.store.sessions)})
        return self.status

    def go_offline(self, reason: str = '') -> None:
        """Switch to local-only mode and stop following remote changes."""
        self.status = DbStatus.ERROR
        self.listener.stop()
        _logger.warning('offline mode', extra={'reason': reason})

    async def drain(self) -> None:
        """Wait for every push scheduled so far (used at shutdown and in tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # -- push plumbing -------------------------------------------------------

    def _push(self, table: str, key: Any, op: str,
              call: Callable[[], Awaitable[Any]]) -> Optional[asyncio.Task]:
        if not self.online:
            return None
        task = asyncio.get_running_loop().create_task(self._run_push(table, key, op, call))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _run_push(self, table: str, key: Any, op: str,
                        call: Callable[[], Awaitable[Any]]) -> None:
        with sync_context(table, key=key, op=op):
            try:
                await call()
            except asyncio.TimeoutError:
                _logger.error('push timed out')
            except Exception:
                _logger.exception('push failed')
            else:
                _logger.debug('pushed')

    def _commit(self, collection: Collection[T],
                update: Update[T]) -> Tuple[Tuple[T, ...], Tuple[T, ...]]:
        previous = collection.snapshot()
        following = update(previous) if callable(update) else update
        collection.replace(following)
        return previous, collection.snapshot()

    # -- generic collection mutators -----------------------------------------

    def update_sessions(self, update: Update[Session]) -> Tuple[Session, ...]:
        previous, following = self._commit(self.store.sessions, update)
        for session in changed_records(previous, following):
            self._push('sessions', session.key, 'upsert',
                       lambda s=session: self.gateway.upsert_session(s))
        return following

    def update_progress(self, update: Update[Progress]) -> Tuple[Progress, ...]:
        previous, following = self._commit(self.store.progress, update)
        for record in changed_records(previous, following):
            self._push('progress', record.key, 'upsert',
                       lambda r=record: self.gateway.upsert_progress(r))
        return following

    def update_students(self, update: Update[Student]) -> Tuple[Student, ...]:
        previous, following = self._commit(self.store.students, update)
        for student in changed_records(previous, following):
            self._push('students', student.key, 'upsert',
                       lambda s=student: self.gateway.upsert_student(s))
        return following

    def update_classes(self, update: Update[ClassLevel]) -> Tuple[ClassLevel, ...]:
        previous, following = self._commit(self.store.classes, update)
        for cls in changed_records(previous, following):
            self._push('classes', cls.key, 'upsert', lambda c=cls: self.gateway.upsert_class(c))
        return following

    def update_messages(self, update: Update[Message]) -> Tuple[Message, ...]:
        """New messages are sent; messages that became read are marked remotely."""
        previous, following = self._commit(self.store.messages, update)
        before = {m.id: m for m in previous}
        for message in changed_records(previous, following):
            old = before.get(message.id)
            if old is None:
                self._push('messages', message.id, 'send',
                           lambda m=message: self.gateway.send_message(m))
            elif message.is_read and not old.is_read:
                self._push('messages', message.id, 'mark_read',
                           lambda i=message.id: self.gateway.mark_message_as_read(i))
        return following

    def update_instructors(self, update: Update[Instructor]) -> Tuple[Instructor, ...]:
        """Commit the staff list and push it whole when it changed."""
        previous = self.store.instructors.snapshot()
        following = tuple(update(previous) if callable(update) else update)
        kept = {ins.id for ins in following}
        removed_admins = [ins for ins in previous if ins.is_admin and ins.id not in kept]
        if removed_admins:
            raise AdminDeletionError(f'cannot delete administrator {removed_admins[0].username!r}')
        if not self.store.instructors.replace(following):
            return previous
        self._cache_instructors()
        self._push('instructors', None, 'sync',
                   lambda staff=following: self.gateway.sync_instructors(staff))
        return following

    def update_club_logos(self, update: Union[Mapping[ClubType, str],
                                              Callable[[Mapping[ClubType, str]],
                                                       Mapping[ClubType, str]]]) -> Mapping[ClubType, str]:
        previous = self.store.club_logos.snapshot()
        following = update(previous) if callable(update) else update
        if self.store.club_logos.replace(following):
            logos = dict(self.store.club_logos.snapshot())
            self._push('club_config', None, 'upsert',
                       lambda: self.gateway.update_club_logos(logos))
        return self.store.club_logos.snapshot()

    def _cache_instructors(self) -> None:
        if self.cache is not None:
            self.cache.write(INSTRUCTORS, [ins.to_dict() for ins in self.store.instructors])

    # -- lookups -------------------------------------------------------------

    def _student(self, student_id: str) -> Student:
        student = self.store.students.get(student_id)
        if student is None:
            raise UnknownEntityError(f'unknown student {student_id!r}')
        return student

    def _session(self, session_id: str) -> Session:
        session = self.store.sessions.get(session_id)
        if session is None:
            raise UnknownEntityError(f'unknown session {session_id!r}')
        return session

    def _class(self, class_id: str) -> ClassLevel:
        cls = self.store.classes.get(class_id)
        if cls is None:
            raise UnknownEntityError(f'unknown class {class_id!r}')
        return cls

    # -- progress ------------------------------------------------------------

    def _record_progress(self, student_id: str, session_id: str, subject_id: str,
                         step: Callable[..., calc.ProgressUpdate]) -> Progress:
        self._student(student_id)
        session = self._session(session_id)
        current = (self.store.progress_for(student_id, session_id)
                   or Progress(student_id=student_id, session_id=session_id))
        record = calc.apply(current, step(session.subject_ids, current.completed_subjects,
                                          subject_id))

        def _put(prev: Tuple[Progress, ...]) -> Tuple[Progress, ...]:
            if any(p.key == record.key for p in prev):
                return tuple(record if p.key == record.key else p for p in prev)
            return prev + (record,)

        self.update_progress(_put)
        return record

    def toggle_subject(self, student_id: str, session_id: str, subject_id: str) -> Progress:
        """Staff tick/untick of one subject for one student."""
        return self._record_progress(student_id, session_id, subject_id, calc.toggle)

    def complete_subject(self, student_id: str, session_id: str, subject_id: str,
                         quiz_score: Optional[int] = None) -> Optional[Progress]:
        """A student validates a subject, directly or through its quiz.

        Returns None (and changes nothing) when the quiz score is below the
        pass mark.
        """
        if quiz_score is not None and not calc.passes(quiz_score):
            return None
        return self._record_progress(student_id, session_id, subject_id, calc.mark_done)

    # -- students ------------------------------------------------------------

    def enroll_student(self, class_id: str, full_name: str, birth_date: str,
                       temporary_password: Optional[str] = None, **details: Any) -> Student:
        if not full_name or not birth_date:
            raise ValueError('full name and birth date are required')
        self._class(class_id)
        student = _student_from(
            {**details, 'id': new_id(), 'full_name': full_name, 'birth_date': birth_date,
             'class_id': class_id},
            temporary_password=temporary_password or generate_temporary_password(),
        )
        self.update_students(lambda prev: prev + (student,))
        return student

    def update_student(self, student: Student) -> Student:
        current = self._student(student.id)
        # Credentials only change through the password operations.
        student = replace(student, age=derive_age(student.birth_date),
                          password_hash=current.password_hash,
                          temporary_password=current.temporary_password,
                          password_changed=current.password_changed)
        self.update_students(lambda prev: tuple(student if s.id == student.id else s
                                                for s in prev))
        return student

    def reset_student_password(self, student_id: str) -> str:
        current = self._student(student_id)
        temporary = generate_temporary_password()
        updated = replace(current, password_hash=None, temporary_password=temporary,
                          password_changed=False)
        self.update_students(lambda prev: tuple(updated if s.id == student_id else s
                                                for s in prev))
        return temporary

    def change_student_password(self, student_id: str, new_password: str,
                                password_hash: Optional[str] = None) -> Student:
        """Replace the temporary password; ``password_hash`` may be computed by the caller."""
        if len(new_password) < 4:
            raise ValueError('password must be at least 4 characters')
        current = self._student(student_id)
        updated = replace(current, password_hash=password_hash or self.credentials.hash(new_password),
                          temporary_password=None, password_changed=True)
        self.update_students(lambda prev: tuple(updated if s.id == student_id else s
                                                for s in prev))
        return updated

    # -- sessions ------------------------------------------------------------

    def create_session(self, class_id: str, subjects: Iterable[Subject] = (),
                       availability_date: Optional[str] = None) -> Session:
        cls = self._class(class_id)
        session = Session(
            id=new_id(),
            club=cls.club,
            class_id=class_id,
            number=len(self.store.sessions.where(lambda s: s.class_id == class_id)) + 1,
            subjects=tuple(subjects),
            availability_date=availability_date or date.today().isoformat(),
        )
        self.update_sessions(lambda prev: prev + (session,))
        return session

    def update_session(self, session: Session) -> Session:
        self._session(session.id)
        self.update_sessions(lambda prev: tuple(session if s.id == session.id else s
                                                for s in prev))
        return session

    def add_subject(self, session_id: str, name: str, prerequisite: str = '',
                    content: str = '') -> Subject:
        session = self._session(session_id)
        subject = Subject(id=new_id(5), name=name, prerequisite=prerequisite, content=content)
        self.update_session(replace(session, subjects=session.subjects + (subject,)))
        return subject

    # -- classes -------------------------------------------------------------

    def update_class(self, cls: ClassLevel, apply_to_all: bool = False) -> List[ClassLevel]:
        """Save one class; with ``apply_to_all`` its icon goes to every class of its club."""
        self._class(cls.id)
        if not (apply_to_all and cls.icon is not None):
            self.update_classes(lambda prev: tuple(cls if c.id == cls.id else c for c in prev))
            return [cls]

        icon: Icon = cls.icon

        def _assign(prev: Tuple[ClassLevel, ...]) -> Tuple[ClassLevel, ...]:
            out = []
            for c in prev:
                if c.id == cls.id:
                    c = cls
                if c.club == cls.club:
                    c = replace(c, icon=icon)
                out.append(c)
            return tuple(out)

        previous, following = self._commit(self.store.classes, _assign)
        before = {c.id: c for c in previous}
        if (before[cls.id].name, before[cls.id].age) != (cls.name, cls.age):
            self._push('classes', cls.id, 'upsert', lambda: self.gateway.upsert_class(cls))
        self._push('classes', cls.club.value, 'icon_all',
                   lambda: self.gateway.update_all_class_icons(cls.club, icon))
        return [c for c in following if c.club == cls.club]

    # -- messages ------------------------------------------------------------

    def send_message(self, sender_id: str, receiver_id: str, content: str) -> Message:
        if ADMIN_CHANNEL not in (sender_id, receiver_id) or sender_id == receiver_id:
            raise ValueError('messages go between the admin channel and one student')
        content = content.strip()
        if not content:
            raise ValueError('message is empty')
        message = Message(id=new_id(), sender_id=sender_id, receiver_id=receiver_id,
                          content=content, timestamp=utc_now_iso())
        self.update_messages(lambda prev: prev + (message,))
        return message

    def mark_conversation_read(self, viewer_id: str, other_id: str) -> int:
        """The viewer opened the conversation: everything they received is read."""
        def unread(m: Message) -> bool:
            return m.receiver_id == viewer_id and m.sender_id == other_id and not m.is_read

        count = len(self.store.messages.where(unread))
        if count:
            self.update_messages(lambda prev: tuple(replace(m, is_read=True) if unread(m) else m
                                                    for m in prev))
        return count

    # -- instructors ---------------------------------------------------------

    def save_instructor(self, full_name: str, username: str, role: InstructorRole,
                        password: Optional[str] = None,
                        instructor_id: Optional[str] = None,
                        password_hash: Optional[str] = None) -> Instructor:
        username = username.strip()
        if not full_name or not username:
            raise ValueError('full name and username are required')
        taken = [i for i in self.store.instructors
                 if i.username.lower() == username.lower() and i.id != instructor_id]
        if taken:
            raise ValueError(f'username {username!r} is already used')
        if password and password_hash is None:
            password_hash = self.credentials.hash(password)
        if instructor_id is None:
            if not password:
                raise ValueError('a password is required for new staff')
            instructor = Instructor(id=f'ins-{new_id()}', full_name=full_name, username=username,
                                    password_hash=password_hash, role=role)
            self.update_instructors(lambda prev: prev + (instructor,))
            return instructor

        current = self.store.instructors.get(instructor_id)
        if current is None:
            raise UnknownEntityError(f'unknown instructor {instructor_id!r}')
        if current.is_admin and role is not InstructorRole.ADMIN and not any(
                i.is_admin for i in self.store.instructors if i.id != instructor_id):
            raise AdminDeletionError('the last administrator cannot lose the ADMIN role')
        instructor = replace(current, full_name=full_name, username=username, role=role,
                             password_hash=password_hash if password else current.password_hash)
        self.update_instructors(lambda prev: tuple(instructor if i.id == instructor_id else i
                                                   for i in prev))
        return instructor

    def delete_instructor(self, instructor_id: str) -> None:
        current = self.store.instructors.get(instructor_id)
        if current is None:
            raise UnknownEntityError(f'unknown instructor {instructor_id!r}')
        if current.is_admin:
            raise AdminDeletionError(f'cannot delete administrator {current.username!r}')
        self.update_instructors(lambda prev: tuple(i for i in prev if i.id != instructor_id))

    # -- club logos ----------------------------------------------------------

    def set_club_logo(self, club: ClubType, logo: str) -> Mapping[ClubType, str]:
        return self.update_club_logos(lambda prev: {**prev, club: logo})

    def reset_club_logo(self, club: ClubType) -> Mapping[ClubType, str]:
        return self.set_club_logo(club, DEFAULT_LOGOS[club])

    # -- reads ---------------------------------------------------------------

    def visible_sessions(self, student_id: str, today: Optional[date] = None) -> List[Session]:
        student = self._student(student_id)
        return [s for s in self.store.sessions_for_class(student.class_id)
                if s.is_available(today)]

    def student_average(self, student_id: str) -> int:
        return calc.average_score(self.store.progress_of_student(student_id))


def _with_admin(instructors: Sequence[Instructor],
                local: Iterable[Instructor]) -> Tuple[Instructor, ...]:
    """Keep at least one ADMIN: borrow the local one if the list has none."""
    if any(ins.is_admin for ins in instructors):
        return tuple(instructors)
    admins = [ins for ins in local if ins.is_admin]
    return tuple(admins[:1]) + tuple(instructors)


def _student_from(data: Dict[str, Any], temporary_password: str) -> Student:
    contacts = tuple(
        c if isinstance(c, EmergencyContact)
        else EmergencyContact(c.get('name', ''), c.get('phone', ''), c.get('relationship', ''))
        for c in data.get('emergency_contacts') or ()
    )
    return Student(
        id=data['id'],
        full_name=data['full_name'],
        birth_date=data['birth_date'],
        age=derive_age(data['birth_date']),
        class_id=data['class_id'],
        address=data.get('address') or '',
        mother_name=data.get('mother_name') or '',
        father_name=data.get('father_name') or '',
        emergency_contacts=contacts,
        diseases=frozenset(data.get('diseases') or ()),
        allergies=frozenset(data.get('allergies') or ()),
        medications=frozenset(data.get('medications') or ()),
        photo=data.get('photo'),
        temporary_password=temporary_password,
        password_changed=False,
    )
