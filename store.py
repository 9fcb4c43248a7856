"""In-memory collections the engine treats as the local source of truth.

Each collection holds an immutable tuple snapshot plus a key index. Writers
commit a whole next snapshot (or patch one record); a commit that changes
nothing keeps the previous tuple object, so readers can detect "no change" by
identity and ``version`` only moves on real changes.

The store is written by the coordinator and by the change-feed listener, both
running on the engine's event loop, so it carries no lock.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import (Any, Callable, Dict, Generic, Hashable, Iterable, Iterator, List,
                    Mapping, Optional, Tuple, TypeVar)

from entities import (ADMIN_CHANNEL, ClassLevel, ClubType, Instructor, Message, Progress,
                      Session, Student)

T = TypeVar('T')

DEFAULT_LOGOS: Dict[ClubType, str] = {
    ClubType.AVENTURIERS: '/static/logos/aventuriers.svg',
    ClubType.EXPLORATEURS: '/static/logos/explorateurs.svg',
}


class Collection(Generic[T]):
    """Ordered records addressed by their ``key``."""

    def __init__(self, name: str, records: Iterable[T] = ()) -> None:
        self.name = name
        self.version = 0
        self._records: Tuple[T, ...] = ()
        self._index: Dict[Hashable, T] = {}
        self._load(tuple(records))

    def _load(self, records: Tuple[T, ...]) -> None:
        self._records = records
        self._index = {record.key: record for record in records}

    def snapshot(self) -> Tuple[T, ...]:
        return self._records

    def get(self, key: Hashable) -> Optional[T]:
        return self._index.get(key)

    def where(self, predicate: Callable[[T], bool]) -> List[T]:
        return [record for record in self._records if predicate(record)]

    def replace(self, records: Iterable[T]) -> bool:
        """Commit ``records`` as the next snapshot. Returns False on no-op."""
        records = tuple(records)
        if records is self._records or records == self._records:
            return False
        self._load(records)
        self.version += 1
        return True

    def put(self, record: T) -> bool:
        """Replace the record with the same key, or append it."""
        current = self._index.get(record.key)
        if current is not None:
            if current == record:
                return False
            return self.replace(record if r.key == record.key else r for r in self._records)
        return self.replace(self._records + (record,))

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[T]:
        return iter(self._records)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._index

    def __repr__(self) -> str:
        return f'<Collection {self.name} size={len(self._records)} v{self.version}>'


class LogoMap:
    """Club id -> logo reference."""

    name = 'club_config'

    def __init__(self, logos: Optional[Mapping[ClubType, str]] = None) -> None:
        self.version = 0
        self._logos: Mapping[ClubType, str] = MappingProxyType(dict(logos or DEFAULT_LOGOS))

    def snapshot(self) -> Mapping[ClubType, str]:
        return self._logos

    def get(self, club: ClubType) -> Optional[str]:
        return self._logos.get(club)

    def is_custom(self, club: ClubType) -> bool:
        return self._logos.get(club) != DEFAULT_LOGOS.get(club)

    def replace(self, logos: Mapping[ClubType, str]) -> bool:
        if dict(logos) == dict(self._logos):
            return False
        self._logos = MappingProxyType(dict(logos))
        self.version += 1
        return True

    def put(self, club: ClubType, logo: str) -> bool:
        return self.replace({**self._logos, club: logo})


class EntityStore:
    """The seven collections of one client."""

    def __init__(
        self,
        classes: Iterable[ClassLevel] = (),
        students: Iterable[Student] = (),
        sessions: Iterable[Session] = (),
        progress: Iterable[Progress] = (),
        messages: Iterable[Message] = (),
        instructors: Iterable[Instructor] = (),
        club_logos: Optional[Mapping[ClubType, str]] = None,
    ) -> None:
        self.classes: Collection[ClassLevel] = Collection('classes', classes)
        self.students: Collection[Student] = Collection('students', students)
        self.sessions: Collection[Session] = Collection('sessions', sessions)
        self.progress: Collection[Progress] = Collection('progress', progress)
        self.messages: Collection[Message] = Collection('messages', messages)
        self.instructors: Collection[Instructor] = Collection('instructors', instructors)
        self.club_logos = LogoMap(club_logos)

    def collection(self, name: str) -> Any:
        return getattr(self, name)

    # -- foreign-key lookups -------------------------------------------------

    def classes_of_club(self, club: ClubType) -> List[ClassLevel]:
        return self.classes.where(lambda c: c.club == club)

    def students_in_class(self, class_id: str) -> List[Student]:
        return self.students.where(lambda s: s.class_id == class_id)

    def sessions_for_class(self, class_id: str) -> List[Session]:
        return sorted(self.sessions.where(lambda s: s.class_id == class_id),
                      key=lambda s: s.number)

    def progress_for(self, student_id: str, session_id: str) -> Optional[Progress]:
        return self.progress.get((student_id, session_id))

    def progress_of_student(self, student_id: str) -> List[Progress]:
        return self.progress.where(lambda p: p.student_id == student_id)

    def conversation(self, student_id: str) -> List[Message]:
        return sorted(
            self.messages.where(lambda m: m.student_id == student_id),
            key=lambda m: m.timestamp,
        )

    def unread_for_admin(self) -> Dict[str, int]:
        """Unread message counts per student, as seen from the staff inbox."""
        counts: Dict[str, int] = {}
        for message in self.messages:
            if message.receiver_id == ADMIN_CHANNEL and not message.is_read:
                counts[message.sender_id] = counts.get(message.sender_id, 0) + 1
        return counts

    def unread_for_student(self, student_id: str) -> int:
        return len(self.messages.where(
            lambda m: m.receiver_id == student_id and not m.is_read))
