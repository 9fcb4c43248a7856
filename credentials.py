"""Credential hashing and login checks.

Permanent passwords (instructors, and students once they chose their own) are
stored as werkzeug password hashes. A student's temporary password is a short
code handed out by staff, kept readable so it can be shown again, and only
honoured until the student sets a permanent password.
"""

from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from werkzeug.security import check_password_hash, generate_password_hash

from entities import Instructor, Student

ADMIN = 'admin'
STUDENT = 'student'


@dataclass(frozen=True)
class Identity:
    """Who is using this device: staff (with a role) or a student."""

    type: str
    id: str
    role: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type, 'id': self.id, 'role': self.role}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Identity':
        if data.get('type') not in (ADMIN, STUDENT) or not data.get('id'):
            raise ValueError('not a session identity')
        return cls(type=data['type'], id=str(data['id']), role=data.get('role'))


def generate_temporary_password() -> str:
    return f'MJA-{1000 + secrets.randbelow(9000)}'


class CredentialVerifier:
    """Hash-and-compare checks for every credential the engine stores."""

    def hash(self, password: str) -> str:
        return generate_password_hash(password)

    def verify(self, stored_hash: Optional[str], candidate: str) -> bool:
        if not stored_hash or not candidate:
            return False
        return check_password_hash(stored_hash, candidate)

    def verify_student(self, student: Student, candidate: str) -> bool:
        """Check against whichever credential is authoritative right now."""
        if student.password_changed:
            return self.verify(student.password_hash, candidate)
        if not student.temporary_password or not candidate:
            return False
        return hmac.compare_digest(student.temporary_password.encode(), candidate.encode())

    def authenticate(self, instructors: Iterable[Instructor], students: Iterable[Student],
                     username: str, password: str) -> Optional[Identity]:
        """Staff first (by username), then students (by full name)."""
        wanted = username.strip().lower()
        for ins in instructors:
            if ins.username.lower() == wanted and self.verify(ins.password_hash, password):
                return Identity(ADMIN, ins.id, ins.role.value)
        for student in students:
            if student.full_name.lower() == wanted and self.verify_student(student, password):
                return Identity(STUDENT, student.id)
        return None
