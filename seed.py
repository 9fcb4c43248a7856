"""Seed data for the club engine.

The same static configuration is used twice: as the in-memory starting point
of every client (:func:`initial_store`), so the application is usable before
or without a backend, and as the content written into an empty backend by
running this module as a script.

Usage:
    python seed.py

"""

import os
from datetime import date
from typing import Iterable, List, Optional

from flask import Flask

from config import Config
from credentials import CredentialVerifier
from entities import (ClassLevel, ClubType, Emoji, EmergencyContact, Instructor,
                      InstructorRole, Session, Student, Subject)
from models import (ClassRow, ClubConfigRow, InstructorRow, SessionRow, StudentRow, db)
from store import DEFAULT_LOGOS, EntityStore

DEFAULT_ADMIN_ID = 'admin-0'
DEFAULT_ADMIN_USERNAME = 'admin'

# Twelve age levels, six per club.
CLASSES: List[ClassLevel] = [
    ClassLevel('av1', 'Petit Agneau', 4, ClubType.AVENTURIERS, Emoji('🐑')),
    ClassLevel('av2', 'Castor Enthousiaste', 5, ClubType.AVENTURIERS, Emoji('🦫')),
    ClassLevel('av3', 'Abeille Active', 6, ClubType.AVENTURIERS, Emoji('🐝')),
    ClassLevel('av4', 'Rayon de Soleil', 7, ClubType.AVENTURIERS, Emoji('☀️')),
    ClassLevel('av5', 'Constructeur', 8, ClubType.AVENTURIERS, Emoji('🛠️')),
    ClassLevel('av6', 'Main Utile', 9, ClubType.AVENTURIERS, Emoji('✋')),
    ClassLevel('ex1', 'Ami', 10, ClubType.EXPLORATEURS, Emoji('🤝')),
    ClassLevel('ex2', 'Compagnon', 11, ClubType.EXPLORATEURS, Emoji('🧭')),
    ClassLevel('ex3', 'Explorateur', 12, ClubType.EXPLORATEURS, Emoji('⛺')),
    ClassLevel('ex4', 'Pionnier', 13, ClubType.EXPLORATEURS, Emoji('🔥')),
    ClassLevel('ex5', 'Voyageur', 14, ClubType.EXPLORATEURS, Emoji('🗺️')),
    ClassLevel('ex6', 'Guide', 15, ClubType.EXPLORATEURS, Emoji('🌟')),
]

SESSIONS: List[Session] = [
    Session(
        id='s1',
        club=ClubType.AVENTURIERS,
        class_id='av1',
        number=1,
        subjects=(
            Subject('sub1', 'La Création',
                    'Comprendre que Dieu est le Créateur de tout.',
                    "<h2>Leçon 1: Dieu est Créateur</h2><p>Dieu a fait le ciel, la terre, "
                    "et tout ce qu'ils contiennent parce qu'il nous aime.</p>"),
            Subject('sub2', 'Les Animaux',
                    'Découvrir la diversité des animaux créés.',
                    '<h2>Leçon 2: Les Animaux de Dieu</h2><p>Dieu a créé les animaux, '
                    'du plus petit insecte au plus grand éléphant.</p>'),
        ),
        availability_date='2024-09-01',
    ),
]

_FIRST_NAMES = ['Jean', 'Marie', 'Alice', 'Lucas', 'Léa', 'Thomas', 'Emma', 'Hugo',
                'Chloé', 'Nathan', 'Zoe', 'Gabriel', 'Mila', 'Arthur', 'Jade', 'Enzo']
_LAST_NAMES = ['Dupont', 'Curie', 'Martin', 'Bernard', 'Petit', 'Roux', 'Durand', 'Leroy',
               'Simon', 'Michel', 'Lefebvre', 'Garcia', 'David', 'Bonnet', 'Morel', 'Moret']


def demo_students(per_class: int = 8, today: Optional[date] = None) -> List[Student]:
    """A placeholder roster: ``per_class`` students in every class."""
    year = (today or date.today()).year
    students = []
    for cls in CLASSES:
        for i in range(per_class):
            last = _LAST_NAMES[(i * 3 + cls.age) % len(_LAST_NAMES)]
            students.append(Student(
                id=f'st-{cls.id}-{i}',
                full_name=f'{_FIRST_NAMES[(i + cls.age) % len(_FIRST_NAMES)]} {last}',
                birth_date=f'{year - cls.age}-05-15',
                age=cls.age,
                class_id=cls.id,
                address='123 Rue de la Jeunesse, 75000 Paris',
                mother_name=f'Maman {last}',
                father_name=f'Papa {last}',
                emergency_contacts=(
                    EmergencyContact(f'Oncle {last}', '06 12 34 56 78', 'Oncle'),
                    EmergencyContact(f'Tante {last}', '07 98 76 54 32', 'Tante'),
                ),
                diseases=frozenset(['Asthme']) if i % 5 == 0 else frozenset(),
                allergies=frozenset(['Arachides']) if i % 4 == 0 else frozenset(),
                medications=frozenset(['Ventoline']) if i % 6 == 0 else frozenset(),
                temporary_password=f'MJA-{1000 + i + cls.age}',
            ))
    return students


def default_admin(verifier: CredentialVerifier, password: Optional[str] = None) -> Instructor:
    return Instructor(
        id=DEFAULT_ADMIN_ID,
        full_name='Administrateur Principal',
        username=DEFAULT_ADMIN_USERNAME,
        password_hash=verifier.hash(password or os.environ.get('DEFAULT_ADMIN_PASSWORD', 'admin')),
        role=InstructorRole.ADMIN,
    )


def initial_store(verifier: CredentialVerifier,
                  instructors: Iterable[Instructor] = (),
                  students: Optional[Iterable[Student]] = None) -> EntityStore:
    """Starting state of a client before the first load.

    ``instructors`` is the offline copy kept in the device cache; the default
    administrator is added when it holds no ADMIN.
    """
    staff = list(instructors)
    if not any(ins.is_admin for ins in staff):
        staff.insert(0, default_admin(verifier))
    return EntityStore(
        classes=CLASSES,
        students=demo_students() if students is None else students,
        sessions=SESSIONS,
        instructors=staff,
        club_logos=DEFAULT_LOGOS,
    )


def create_app() -> Flask:
    """Create a standalone Flask application for seeding.

    The main app is not imported here, which keeps seeding independent of the
    HTTP routes and of the sync engine.
    """
    app = Flask(__name__)
    app.config.from_object(Config)
    db.init_app(app)
    return app


def seed_data(store: Optional[EntityStore] = None) -> None:
    """Write the seed into the bound database, replacing what is there."""
    store = store or initial_store(CredentialVerifier())

    # Drop and recreate tables. In production you might prefer Alembic
    # migrations instead of dropping the entire database.
    db.drop_all()
    db.create_all()

    for model, records in ((ClassRow, store.classes), (InstructorRow, store.instructors),
                           (StudentRow, store.students), (SessionRow, store.sessions)):
        for record in records:
            row = model(id=record.id)
            row.assign(record)
            db.session.add(row)
    for club, logo in store.club_logos.snapshot().items():
        db.session.add(ClubConfigRow(id=club.value, logo=logo))
    db.session.commit()

    print(f'Database seeded: {len(store.classes)} classes, {len(store.students)} students.')


def main() -> None:
    app = create_app()
    with app.app_context():
        seed_data()


if __name__ == '__main__':
    main()
