from datetime import date

import pytest

from conftest import SESSION
from entities import (ClassLevel, ClubType, Emoji, ImageRef, QuizQuestion, Session, Student,
                      derive_age, icon_from_dict, icon_to_dict, parse_icon)


@pytest.mark.parametrize('raw, expected', [
    ('🐑', Emoji('🐑')),
    ('☀️', Emoji('☀️')),
    ('data:image/png;base64,iVBORw0KGgo=', ImageRef('data:image/png;base64,iVBORw0KGgo=')),
    ('https://example.org/icon.png', ImageRef('https://example.org/icon.png')),
    ('/static/icons/castor.svg', ImageRef('/static/icons/castor.svg')),
    ('', None),
    (None, None),
])
def test_legacy_icon_strings_are_parsed_by_prefix(raw, expected):
    assert parse_icon(raw) == expected


def test_tagged_icon_dicts():
    assert icon_to_dict(Emoji('🐝')) == {'kind': 'emoji', 'value': '🐝'}
    assert icon_from_dict({'kind': 'image', 'value': '/a.png'}) == ImageRef('/a.png')
    with pytest.raises(ValueError):
        icon_from_dict({'kind': 'sticker', 'value': 'x'})


def test_class_dict_round_trip_keeps_icon_variant():
    cls = ClassLevel('av3', 'Abeille Active', 6, ClubType.AVENTURIERS, ImageRef('/bee.png'))
    assert ClassLevel.from_dict(cls.to_dict()) == cls


def test_session_dict_round_trip():
    assert Session.from_dict(SESSION.to_dict()) == SESSION


def test_student_public_dict_hides_hash():
    student = Student.from_dict({'id': 'st-1', 'full_name': 'A', 'birth_date': '2018-02-03',
                                 'class_id': 'av1', 'password_hash': 'pbkdf2:x'})
    assert student.age == date.today().year - 2018
    assert 'password_hash' not in student.public_dict()


def test_derive_age_counts_years_only():
    assert derive_age('2015-12-31', today=date(2025, 1, 1)) == 10


def test_quiz_question_validation():
    assert QuizQuestion.from_dict({'text': 'q', 'options': ['a', 'b', 'c', 'd'],
                                   'correctIndex': 2}).correct_index == 2
    with pytest.raises(ValueError):
        QuizQuestion('q', ('a', 'b', 'c'), 0)
