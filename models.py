"""Relational tables backing the sync engine.

One table per entity, each row mirroring the field set of the matching record
in :mod:`entities`. Every model knows how to turn itself into a record
(``to_entity``) and how to take the values of one (``assign``); the gateway
uses nothing else. Notable constraints:

* ``progress`` holds at most one row per (student_id, session_id); the unique
  constraint is what the gateway's upsert resolves conflicts on, and rows go
  away with their student or session (``ON DELETE CASCADE``).
* ``instructors.username`` is unique.
* ``club_config`` has one row per club, keyed by the club identifier.
"""

from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

from entities import (ClassLevel, ClubType, EmergencyContact, Instructor, InstructorRole,
                      Message, Progress, Session, Student, Subject, icon_from_dict,
                      icon_to_dict)

# Instantiate the SQLAlchemy extension. It is bound to the Flask application
# in ``app.create_app`` via ``db.init_app(app)``.
db = SQLAlchemy()


class ClassRow(db.Model):
    __tablename__ = 'classes'

    id = db.Column(db.String(36), primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    age = db.Column(db.Integer, nullable=False)
    club = db.Column(db.String(20), nullable=False, index=True)
    icon_kind = db.Column(db.String(10), nullable=True)  # emoji | image
    icon_value = db.Column(db.Text, nullable=True)

    def to_entity(self) -> ClassLevel:
        icon = {'kind': self.icon_kind, 'value': self.icon_value} if self.icon_kind else None
        return ClassLevel(id=self.id, name=self.name, age=self.age, club=ClubType(self.club),
                          icon=icon_from_dict(icon))

    def assign(self, cls: ClassLevel) -> None:
        icon = icon_to_dict(cls.icon) or {'kind': None, 'value': None}
        self.name = cls.name
        self.age = cls.age
        self.club = cls.club.value
        self.icon_kind = icon['kind']
        self.icon_value = icon['value']

    def __repr__(self) -> str:
        return f"<ClassRow {self.id} {self.name}>"


class InstructorRow(db.Model):
    __tablename__ = 'instructors'

    id = db.Column(db.String(36), primary_key=True)
    full_name = db.Column(db.String(100), nullable=False)
    username = db.Column(db.String(50), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False)

    def to_entity(self) -> Instructor:
        return Instructor(id=self.id, full_name=self.full_name, username=self.username,
                          password_hash=self.password_hash, role=InstructorRole(self.role))

    def assign(self, ins: Instructor) -> None:
        self.full_name = ins.full_name
        self.username = ins.username
        self.password_hash = ins.password_hash
        self.role = ins.role.value

    def __repr__(self) -> str:
        return f"<InstructorRow {self.username} {self.role}>"


class StudentRow(db.Model):
    __tablename__ = 'students'

    id = db.Column(db.String(36), primary_key=True)
    full_name = db.Column(db.String(100), nullable=False)
    birth_date = db.Column(db.String(10), nullable=False)
    age = db.Column(db.Integer, nullable=False)
    class_id = db.Column(db.String(36), nullable=False, index=True)
    address = db.Column(db.Text, nullable=False, default='')
    mother_name = db.Column(db.String(100), nullable=False, default='')
    father_name = db.Column(db.String(100), nullable=False, default='')
    emergency_contacts = db.Column(db.JSON, nullable=False, default=list)
    diseases = db.Column(db.JSON, nullable=False, default=list)
    allergies = db.Column(db.JSON, nullable=False, default=list)
    medications = db.Column(db.JSON, nullable=False, default=list)
    photo = db.Column(db.Text, nullable=True)
    password_hash = db.Column(db.String(255), nullable=True)
    temporary_password = db.Column(db.String(50), nullable=True)
    password_changed = db.Column(db.Boolean, nullable=False, default=False)

    def to_entity(self) -> Student:
        return Student(
            id=self.id,
            full_name=self.full_name,
            birth_date=self.birth_date,
            age=self.age,
            class_id=self.class_id,
            address=self.address or '',
            mother_name=self.mother_name or '',
            father_name=self.father_name or '',
            emergency_contacts=tuple(
                EmergencyContact(c.get('name', ''), c.get('phone', ''), c.get('relationship', ''))
                for c in self.emergency_contacts or ()
            ),
            diseases=frozenset(self.diseases or ()),
            allergies=frozenset(self.allergies or ()),
            medications=frozenset(self.medications or ()),
            photo=self.photo,
            password_hash=self.password_hash,
            temporary_password=self.temporary_password,
            password_changed=bool(self.password_changed),
        )

    def assign(self, student: Student) -> None:
        data = student.to_dict()
        for column in ('full_name', 'birth_date', 'age', 'class_id', 'address', 'mother_name',
                       'father_name', 'emergency_contacts', 'diseases', 'allergies',
                       'medications', 'photo', 'password_hash', 'temporary_password',
                       'password_changed'):
            setattr(self, column, data[column])

    def __repr__(self) -> str:
        return f"<StudentRow {self.id} {self.full_name}>"


class SessionRow(db.Model):
    __tablename__ = 'sessions'

    id = db.Column(db.String(36), primary_key=True)
    club = db.Column(db.String(20), nullable=False)
    class_id = db.Column(db.String(36), nullable=False, index=True)
    number = db.Column(db.Integer, nullable=False)
    subjects = db.Column(db.JSON, nullable=False, default=list)
    availability_date = db.Column(db.String(10), nullable=False, default='')

    def to_entity(self) -> Session:
        return Session(id=self.id, club=ClubType(self.club), class_id=self.class_id,
                       number=self.number,
                       subjects=tuple(Subject.from_dict(s) for s in self.subjects or ()),
                       availability_date=self.availability_date or '')

    def assign(self, session: Session) -> None:
        self.club = session.club.value
        self.class_id = session.class_id
        self.number = session.number
        self.subjects = [s.to_dict() for s in session.subjects]
        self.availability_date = session.availability_date

    def __repr__(self) -> str:
        return f"<SessionRow {self.id} class={self.class_id} n={self.number}>"


class ProgressRow(db.Model):
    __tablename__ = 'progress'

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.String(36), db.ForeignKey('students.id', ondelete='CASCADE'),
                           nullable=False)
    session_id = db.Column(db.String(36), db.ForeignKey('sessions.id', ondelete='CASCADE'),
                           nullable=False)
    score = db.Column(db.Integer, nullable=False, default=0)
    completed = db.Column(db.Boolean, nullable=False, default=False)
    completed_subjects = db.Column(db.JSON, nullable=False, default=list)
    completion_date = db.Column(db.String(40), nullable=False, default='')

    __table_args__ = (db.UniqueConstraint('student_id', 'session_id',
                                          name='uix_progress_student_session'),)

    def to_entity(self) -> Progress:
        return Progress(student_id=self.student_id, session_id=self.session_id,
                        score=self.score, completed=bool(self.completed),
                        completed_subjects=frozenset(self.completed_subjects or ()),
                        completion_date=self.completion_date or '')

    def assign(self, prog: Progress) -> None:
        self.score = prog.score
        self.completed = prog.completed
        self.completed_subjects = sorted(prog.completed_subjects)
        self.completion_date = prog.completion_date

    def __repr__(self) -> str:
        return (f"<ProgressRow student={self.student_id} session={self.session_id} "
                f"score={self.score}>")


class MessageRow(db.Model):
    __tablename__ = 'messages'

    id = db.Column(db.String(36), primary_key=True)
    sender_id = db.Column(db.String(36), nullable=False, index=True)
    receiver_id = db.Column(db.String(36), nullable=False, index=True)
    content = db.Column(db.Text, nullable=False)
    timestamp = db.Column(db.String(40), nullable=False)
    is_read = db.Column(db.Boolean, nullable=False, default=False)

    def to_entity(self) -> Message:
        return Message(id=self.id, sender_id=self.sender_id, receiver_id=self.receiver_id,
                       content=self.content, timestamp=self.timestamp,
                       is_read=bool(self.is_read))

    def __repr__(self) -> str:
        return f"<MessageRow {self.id} {self.sender_id}->{self.receiver_id}>"


class ClubConfigRow(db.Model):
    __tablename__ = 'club_config'

    id = db.Column(db.String(20), primary_key=True)  # club identifier
    logo = db.Column(db.Text, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))

    def __repr__(self) -> str:
        return f"<ClubConfigRow {self.id}>"


# Table name -> model, in the order the gateway loads them.
TABLES = {
    'classes': ClassRow,
    'instructors': InstructorRow,
    'students': StudentRow,
    'sessions': SessionRow,
    'progress': ProgressRow,
    'messages': MessageRow,
    'club_config': ClubConfigRow,
}
