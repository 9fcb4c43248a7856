"""Domain records held by the engine.

All records are frozen dataclasses: a collection snapshot handed to a reader
can never change under it, and dataclass equality gives the deep comparison
the listener and the coordinator rely on. Each record exposes ``key`` (its
natural key) and converts to and from plain dicts, which is the shape used by
the HTTP layer, the local cache and change-feed payloads.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple, Union

# Literal identifier of the staff side of every conversation.
ADMIN_CHANNEL = 'admin'


class ClubType(str, Enum):
    AVENTURIERS = 'AVENTURIERS'
    EXPLORATEURS = 'EXPLORATEURS'


class InstructorRole(str, Enum):
    ADMIN = 'ADMIN'
    AVENTURIERS = 'AVENTURIERS'
    EXPLORATEURS = 'EXPLORATEURS'


def new_id(length: int = 9) -> str:
    return uuid.uuid4().hex[:length]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds')


def derive_age(birth_date: str, today: Optional[date] = None) -> int:
    """Age as counted by the club: current year minus birth year."""
    today = today or date.today()
    return today.year - date.fromisoformat(birth_date[:10]).year


# ---------------------------------------------------------------------------
# Class icons
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Emoji:
    text: str
    kind = 'emoji'


@dataclass(frozen=True)
class ImageRef:
    uri: str
    kind = 'image'


Icon = Union[Emoji, ImageRef]

_IMAGE_PREFIXES = ('data:', 'http://', 'https://', '/')


def parse_icon(value: Optional[str]) -> Optional[Icon]:
    """Read an untagged legacy icon string.

    Image references are recognised by their scheme or path prefix; anything
    else is an emoji.
    """
    if not value:
        return None
    if value.startswith(_IMAGE_PREFIXES):
        return ImageRef(value)
    return Emoji(value)


def icon_to_dict(icon: Optional[Icon]) -> Optional[Dict[str, str]]:
    if icon is None:
        return None
    if isinstance(icon, Emoji):
        return {'kind': Emoji.kind, 'value': icon.text}
    return {'kind': ImageRef.kind, 'value': icon.uri}


def icon_from_dict(data: Any) -> Optional[Icon]:
    if data is None or isinstance(data, (Emoji, ImageRef)):
        return data
    if isinstance(data, str):
        return parse_icon(data)
    kind = data.get('kind')
    if kind == Emoji.kind:
        return Emoji(data['value'])
    if kind == ImageRef.kind:
        return ImageRef(data['value'])
    raise ValueError(f'unknown icon kind: {kind!r}')


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClassLevel:
    id: str
    name: str
    age: int
    club: ClubType
    icon: Optional[Icon] = None

    @property
    def key(self) -> str:
        return self.id

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'name': self.name, 'age': self.age,
                'club': self.club.value, 'icon': icon_to_dict(self.icon)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClassLevel':
        return cls(id=data['id'], name=data['name'], age=int(data['age']),
                   club=ClubType(data['club']), icon=icon_from_dict(data.get('icon')))


@dataclass(frozen=True)
class EmergencyContact:
    name: str
    phone: str
    relationship: str = ''


@dataclass(frozen=True)
class Student:
    id: str
    full_name: str
    birth_date: str
    age: int
    class_id: str
    address: str = ''
    mother_name: str = ''
    father_name: str = ''
    emergency_contacts: Tuple[EmergencyContact, ...] = ()
    diseases: FrozenSet[str] = frozenset()
    allergies: FrozenSet[str] = frozenset()
    medications: FrozenSet[str] = frozenset()
    photo: Optional[str] = None
    # Hash of the permanent password; only honoured once password_changed is set.
    password_hash: Optional[str] = None
    temporary_password: Optional[str] = None
    password_changed: bool = False

    @property
    def key(self) -> str:
        return self.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'full_name': self.full_name,
            'birth_date': self.birth_date,
            'age': self.age,
            'class_id': self.class_id,
            'address': self.address,
            'mother_name': self.mother_name,
            'father_name': self.father_name,
            'emergency_contacts': [
                {'name': c.name, 'phone': c.phone, 'relationship': c.relationship}
                for c in self.emergency_contacts
            ],
            'diseases': sorted(self.diseases),
            'allergies': sorted(self.allergies),
            'medications': sorted(self.medications),
            'photo': self.photo,
            'password_hash': self.password_hash,
            'temporary_password': self.temporary_password,
            'password_changed': self.password_changed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Student':
        return cls(
            id=data['id'],
            full_name=data['full_name'],
            birth_date=data['birth_date'],
            age=int(data.get('age') or derive_age(data['birth_date'])),
            class_id=data['class_id'],
            address=data.get('address') or '',
            mother_name=data.get('mother_name') or '',
            father_name=data.get('father_name') or '',
            emergency_contacts=tuple(
                EmergencyContact(c.get('name', ''), c.get('phone', ''), c.get('relationship', ''))
                for c in data.get('emergency_contacts') or ()
            ),
            diseases=frozenset(data.get('diseases') or ()),
            allergies=frozenset(data.get('allergies') or ()),
            medications=frozenset(data.get('medications') or ()),
            photo=data.get('photo'),
            password_hash=data.get('password_hash') or None,
            temporary_password=data.get('temporary_password') or None,
            password_changed=bool(data.get('password_changed', False)),
        )

    def public_dict(self) -> Dict[str, Any]:
        """Serialised form without the password hash."""
        data = self.to_dict()
        data.pop('password_hash')
        return data


@dataclass(frozen=True)
class QuizQuestion:
    text: str
    options: Tuple[str, str, str, str]
    correct_index: int

    def __post_init__(self):
        if len(self.options) != 4:
            raise ValueError('a quiz question needs exactly 4 options')
        if not 0 <= self.correct_index <= 3:
            raise ValueError('correct_index must be between 0 and 3')

    def to_dict(self) -> Dict[str, Any]:
        return {'text': self.text, 'options': list(self.options),
                'correct_index': self.correct_index}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QuizQuestion':
        index = data.get('correct_index', data.get('correctIndex'))
        return cls(text=str(data['text']), options=tuple(str(o) for o in data['options']),
                   correct_index=int(index))


@dataclass(frozen=True)
class Subject:
    id: str
    name: str
    prerequisite: str = ''
    content: str = ''
    quiz: Tuple[QuizQuestion, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'name': self.name, 'prerequisite': self.prerequisite,
                'content': self.content, 'quiz': [q.to_dict() for q in self.quiz]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Subject':
        return cls(id=data.get('id') or new_id(5), name=data.get('name', ''),
                   prerequisite=data.get('prerequisite') or '',
                   content=data.get('content') or '',
                   quiz=tuple(QuizQuestion.from_dict(q) for q in data.get('quiz') or ()))


@dataclass(frozen=True)
class Session:
    id: str
    club: ClubType
    class_id: str
    number: int
    subjects: Tuple[Subject, ...] = ()
    availability_date: str = ''

    @property
    def key(self) -> str:
        return self.id

    @property
    def subject_ids(self) -> Tuple[str, ...]:
        return tuple(s.id for s in self.subjects)

    def subject(self, subject_id: str) -> Optional[Subject]:
        return next((s for s in self.subjects if s.id == subject_id), None)

    def is_available(self, today: Optional[date] = None) -> bool:
        if not self.availability_date:
            return True
        today = today or date.today()
        return date.fromisoformat(self.availability_date[:10]) <= today

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'club': self.club.value, 'class_id': self.class_id,
                'number': self.number, 'subjects': [s.to_dict() for s in self.subjects],
                'availability_date': self.availability_date}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Session':
        return cls(id=data['id'], club=ClubType(data['club']), class_id=data['class_id'],
                   number=int(data['number']),
                   subjects=tuple(Subject.from_dict(s) for s in data.get('subjects') or ()),
                   availability_date=data.get('availability_date') or '')


@dataclass(frozen=True)
class Progress:
    student_id: str
    session_id: str
    score: int = 0
    completed: bool = False
    completed_subjects: FrozenSet[str] = frozenset()
    completion_date: str = ''

    @property
    def key(self) -> Tuple[str, str]:
        return (self.student_id, self.session_id)

    def to_dict(self) -> Dict[str, Any]:
        return {'student_id': self.student_id, 'session_id': self.session_id,
                'score': self.score, 'completed': self.completed,
                'completed_subjects': sorted(self.completed_subjects),
                'completion_date': self.completion_date}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Progress':
        return cls(student_id=data['student_id'], session_id=data['session_id'],
                   score=int(data.get('score') or 0), completed=bool(data.get('completed')),
                   completed_subjects=frozenset(data.get('completed_subjects') or ()),
                   completion_date=data.get('completion_date') or '')


@dataclass(frozen=True)
class Message:
    id: str
    sender_id: str
    receiver_id: str
    content: str
    timestamp: str
    is_read: bool = False

    @property
    def key(self) -> str:
        return self.id

    @property
    def student_id(self) -> str:
        """The non-admin party of the conversation."""
        return self.receiver_id if self.sender_id == ADMIN_CHANNEL else self.sender_id

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'sender_id': self.sender_id, 'receiver_id': self.receiver_id,
                'content': self.content, 'timestamp': self.timestamp, 'is_read': self.is_read}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Message':
        return cls(id=data['id'], sender_id=data['sender_id'], receiver_id=data['receiver_id'],
                   content=data['content'], timestamp=data['timestamp'],
                   is_read=bool(data.get('is_read', False)))


@dataclass(frozen=True)
class Instructor:
    id: str
    full_name: str
    username: str
    password_hash: str
    role: InstructorRole = field(default=InstructorRole.ADMIN)

    @property
    def key(self) -> str:
        return self.id

    @property
    def is_admin(self) -> bool:
        return self.role is InstructorRole.ADMIN

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'full_name': self.full_name, 'username': self.username,
                'password_hash': self.password_hash, 'role': self.role.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Instructor':
        return cls(id=data['id'], full_name=data['full_name'], username=data['username'],
                   password_hash=data['password_hash'], role=InstructorRole(data['role']))

    def public_dict(self) -> Dict[str, Any]:
        data = self.to_dict()
        data.pop('password_hash')
        return data
