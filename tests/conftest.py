import atexit
import sys
from pathlib import Path
from typing import Callable, Generator, List

import pytest
from flask import Flask

sys.path.append(str(Path(__file__).resolve().parents[1]))

from config import Config
from credentials import CredentialVerifier
from entities import (ClassLevel, ClubType, Emoji, Instructor, InstructorRole, Session,
                      Student, Subject)
from gateway import RemoteGateway
from models import TABLES, db
from store import EntityStore

VERIFIER = CredentialVerifier()
ADMIN_HASH = VERIFIER.hash('admin')

CLASSES = [
    ClassLevel('av1', 'Petit Agneau', 4, ClubType.AVENTURIERS, Emoji('🐑')),
    ClassLevel('av2', 'Castor Enthousiaste', 5, ClubType.AVENTURIERS, Emoji('🦫')),
    ClassLevel('ex1', 'Ami', 10, ClubType.EXPLORATEURS, Emoji('🤝')),
]

SESSION = Session('S', ClubType.AVENTURIERS, 'av1', 1,
                  (Subject('s1', 'La Création'), Subject('s2', 'Les Animaux')),
                  '2024-09-01')

ADMIN = Instructor('admin-0', 'Administrateur Principal', 'admin', ADMIN_HASH,
                   InstructorRole.ADMIN)


def make_student(index: int, class_id: str = 'av1') -> Student:
    return Student(id=f'st-{index}', full_name=f'Eleve {index}', birth_date='2020-05-15',
                   age=4, class_id=class_id, temporary_password=f'MJA-{1000 + index}')


@pytest.fixture
def make_store() -> Callable[..., EntityStore]:
    def factory(**overrides) -> EntityStore:
        collections = dict(
            classes=CLASSES,
            students=[make_student(i) for i in range(1, 6)],
            sessions=[SESSION],
            instructors=[ADMIN],
        )
        collections.update(overrides)
        return EntityStore(**collections)
    return factory


@pytest.fixture
def store(make_store) -> EntityStore:
    return make_store()


class FakeSubscription:
    def __init__(self, table, callback):
        self.table = table
        self.callback = callback
        self.active = True

    def unsubscribe(self):
        self.active = False


class RecordingGateway:
    """In-memory stand-in for RemoteGateway that records every call."""

    def __init__(self, online: bool = True, failing: tuple = (), **remote) -> None:
        self.online = online
        self.failing = set(failing)
        self.remote = remote
        self.calls: List[tuple] = []
        self.subscriptions: List[FakeSubscription] = []

    @property
    def writes(self) -> List[tuple]:
        return [call for call in self.calls if not call[0].startswith(('check', 'fetch'))]

    async def check_connection(self):
        self.calls.append(('check_connection',))
        return self.online

    async def _read(self, table, empty=list):
        self.calls.append((f'fetch_{table}',))
        return self.remote.get(table, empty())

    async def fetch_classes(self):
        return await self._read('classes')

    async def fetch_students(self):
        return await self._read('students')

    async def fetch_sessions(self):
        return await self._read('sessions')

    async def fetch_progress(self):
        return await self._read('progress')

    async def fetch_messages(self):
        return await self._read('messages')

    async def fetch_instructors(self):
        return await self._read('instructors')

    async def fetch_club_logos(self):
        return await self._read('club_logos', dict)

    async def _write(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.failing:
            raise RuntimeError(f'{name} rejected')

    async def upsert_class(self, cls):
        await self._write('upsert_class', cls)

    async def update_all_class_icons(self, club, icon):
        await self._write('update_all_class_icons', club, icon)

    async def upsert_student(self, student):
        await self._write('upsert_student', student)

    async def upsert_session(self, session):
        await self._write('upsert_session', session)

    async def upsert_progress(self, record):
        await self._write('upsert_progress', record)

    async def send_message(self, message):
        await self._write('send_message', message)

    async def mark_message_as_read(self, message_id):
        await self._write('mark_message_as_read', message_id)

    async def sync_instructors(self, instructors):
        await self._write('sync_instructors', tuple(instructors))

    async def update_club_logos(self, logos):
        await self._write('update_club_logos', dict(logos))

    def subscribe(self, table, callback):
        subscription = FakeSubscription(table, callback)
        self.subscriptions.append(subscription)
        return subscription


@pytest.fixture
def recording_gateway() -> Callable[..., RecordingGateway]:
    return RecordingGateway


def _bound_app(tmp_path: Path, name: str, create_tables: bool = True) -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)
    app.config.update(
        TESTING=True,
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{tmp_path / f'{name}.db'}",
        LOCAL_CACHE_DIR=str(tmp_path / 'cache'),
        GATEWAY_TIMEOUT_SECONDS=5.0,
        CONNECT_ATTEMPTS=1,
    )
    db.init_app(app)
    if create_tables:
        with app.app_context():
            db.create_all()
    return app


@pytest.fixture
def db_app(tmp_path) -> Generator[Flask, None, None]:
    app = _bound_app(tmp_path, 'backend')
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def gateway(db_app) -> Generator[RemoteGateway, None, None]:
    gw = RemoteGateway(db_app, timeout=5.0, connect_attempts=1)
    yield gw
    gw.close()


@pytest.fixture
def unreachable_gateway(tmp_path) -> Generator[RemoteGateway, None, None]:
    """A gateway whose backend has no tables: every read and the probe fail."""
    app = _bound_app(tmp_path, 'empty', create_tables=False)
    gw = RemoteGateway(app, timeout=5.0, connect_attempts=1)
    yield gw
    gw.close()
    with app.app_context():
        db.engine.dispose()


@pytest.fixture
def seed_backend(db_app) -> Callable[..., None]:
    """Write class, student, session or instructor records straight into the backend."""

    def insert(*records) -> None:
        by_type = {model.__name__.replace('Row', ''): model for model in TABLES.values()}
        by_type['ClassLevel'] = by_type.pop('Class')
        with db_app.app_context():
            for record in records:
                model = by_type[type(record).__name__]
                row = model(id=record.id)
                row.assign(record)
                db.session.add(row)
            db.session.commit()

    return insert


@pytest.fixture
def app(tmp_path, monkeypatch) -> Generator[Flask, None, None]:
    """The full HTTP application with its engine started on a fresh backend."""
    from app import EXTENSION_KEY, create_app

    monkeypatch.setenv('REQUEST_LOG_SAMPLE_RATE', '1')
    monkeypatch.delenv('DEFAULT_ADMIN_PASSWORD', raising=False)
    application = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'api.db'}",
        'LOCAL_CACHE_DIR': str(tmp_path / 'device'),
        'CONNECT_ATTEMPTS': 1,
        'CONTENT_API_URL': '',
    })
    yield application
    ctx = application.extensions[EXTENSION_KEY]
    ctx.shutdown()
    atexit.unregister(ctx.shutdown)
    with application.app_context():
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client):
    def _login(username: str = 'admin', password: str = 'admin'):
        response = client.post('/api/login', json={'username': username, 'password': password})
        assert response.status_code == 200, response.get_json()
        return response.get_json()
    return _login
