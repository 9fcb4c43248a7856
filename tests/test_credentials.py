import re
from dataclasses import replace

import pytest

from conftest import ADMIN, VERIFIER, make_student
from credentials import ADMIN as ADMIN_TYPE, STUDENT, Identity, generate_temporary_password


def test_hash_is_not_the_password():
    hashed = VERIFIER.hash('admin')
    assert hashed != 'admin'
    assert VERIFIER.verify(hashed, 'admin')
    assert not VERIFIER.verify(hashed, 'Admin')
    assert not VERIFIER.verify(None, 'admin')


def test_temporary_password_format():
    for _ in range(20):
        assert re.fullmatch(r'MJA-[1-9]\d{3}', generate_temporary_password())


def test_student_credential_follows_password_changed_flag():
    student = make_student(1)
    assert VERIFIER.verify_student(student, 'MJA-1001')
    assert not VERIFIER.verify_student(student, 'MJA-9999')

    changed = replace(student, password_hash=VERIFIER.hash('perso'), password_changed=True)
    assert VERIFIER.verify_student(changed, 'perso')
    # The temporary password stops working once a permanent one is set.
    assert not VERIFIER.verify_student(changed, 'MJA-1001')


def test_authenticate_staff_then_students():
    students = [make_student(1), make_student(2)]

    staff = VERIFIER.authenticate([ADMIN], students, '  ADMIN ', 'admin')
    assert staff == Identity(ADMIN_TYPE, 'admin-0', 'ADMIN')

    student = VERIFIER.authenticate([ADMIN], students, 'eleve 2', 'MJA-1002')
    assert student == Identity(STUDENT, 'st-2')

    assert VERIFIER.authenticate([ADMIN], students, 'admin', 'wrong') is None
    assert VERIFIER.authenticate([ADMIN], students, 'nobody', 'MJA-1002') is None


def test_identity_round_trip_and_validation():
    identity = Identity(ADMIN_TYPE, 'admin-0', 'ADMIN')
    assert Identity.from_dict(identity.to_dict()) == identity
    with pytest.raises(ValueError):
        Identity.from_dict({'type': 'guest', 'id': 'x'})
    with pytest.raises(ValueError):
        Identity.from_dict({'type': STUDENT})
