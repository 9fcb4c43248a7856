import asyncio
from dataclasses import replace

import pytest
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from conftest import ADMIN, CLASSES, SESSION, VERIFIER, make_student
from entities import (ADMIN_CHANNEL, ClubType, Emoji, Instructor, InstructorRole, Message,
                      Progress)
from coordinator import DbStatus, SyncCoordinator
from models import ClassRow, ProgressRow, db


def run(coro):
    return asyncio.run(coro)


def test_probe_and_reads_on_seeded_backend(gateway, seed_backend):
    seed_backend(*CLASSES, make_student(1), SESSION, ADMIN)

    async def scenario():
        return (await gateway.check_connection(), await gateway.fetch_classes(),
                await gateway.fetch_students(), await gateway.fetch_sessions(),
                await gateway.fetch_instructors(), await gateway.fetch_club_logos())

    ok, classes, students, sessions, instructors, logos = run(scenario())
    assert ok is True
    assert [c.id for c in classes] == ['av1', 'av2', 'ex1']
    assert classes[0] == CLASSES[0]
    assert students == [make_student(1)]
    assert sessions == [SESSION]
    assert instructors == [ADMIN]
    assert logos == {}


def test_unreachable_backend_degrades_to_empty(unreachable_gateway):
    async def scenario():
        return (await unreachable_gateway.check_connection(),
                await unreachable_gateway.fetch_students(),
                await unreachable_gateway.fetch_club_logos())

    assert run(scenario()) == (False, [], {})


def test_writes_propagate_failures(unreachable_gateway):
    with pytest.raises(SQLAlchemyError):
        run(unreachable_gateway.upsert_student(make_student(1)))


def test_progress_upsert_keeps_one_row_per_pair(gateway, db_app):
    async def scenario():
        await gateway.upsert_progress(Progress('st-1', 'S', score=50,
                                               completed_subjects=frozenset({'s1'})))
        await gateway.upsert_progress(Progress('st-1', 'S', score=100, completed=True,
                                               completed_subjects=frozenset({'s1', 's2'})))
        return await gateway.fetch_progress()

    records = run(scenario())
    assert len(records) == 1
    assert records[0].score == 100
    assert records[0].completed_subjects == {'s1', 's2'}
    with db_app.app_context():
        assert ProgressRow.query.count() == 1


def test_student_upsert_replaces_row(gateway):
    student = make_student(1)

    async def scenario():
        await gateway.upsert_student(student)
        await gateway.upsert_student(replace(student, allergies=frozenset({'Pollen'})))
        return await gateway.fetch_students()

    assert run(scenario()) == [replace(student, allergies=frozenset({'Pollen'}))]


def test_messages_send_and_mark_read(gateway):
    message = Message('m1', 'st-1', ADMIN_CHANNEL, 'Bonjour', '2024-01-01T10:00:00')

    async def scenario():
        await gateway.send_message(message)
        with pytest.raises(IntegrityError):
            await gateway.send_message(message)
        marked = await gateway.mark_message_as_read('m1')
        missing = await gateway.mark_message_as_read('nope')
        return marked, missing, await gateway.fetch_messages()

    marked, missing, messages = run(scenario())
    assert (marked, missing) == (True, False)
    assert messages == [replace(message, is_read=True)]


def test_bulk_icon_update_only_touches_one_club(gateway, seed_backend):
    seed_backend(*CLASSES)

    async def scenario():
        count = await gateway.update_all_class_icons(ClubType.AVENTURIERS, Emoji('🌈'))
        return count, await gateway.fetch_classes()

    count, classes = run(scenario())
    assert count == 2
    icons = {c.id: c.icon for c in classes}
    assert icons['av1'] == icons['av2'] == Emoji('🌈')
    assert icons['ex1'] == Emoji('🤝')


def test_sync_instructors_mirrors_list_but_keeps_admins(gateway, seed_backend):
    old = Instructor('ins-old', 'Ancien', 'ancien', VERIFIER.hash('x'), InstructorRole.AVENTURIERS)
    other_admin = Instructor('admin-2', 'Second', 'second', VERIFIER.hash('x'))
    seed_backend(ADMIN, old, other_admin)
    new = Instructor('ins-new', 'Nouveau', 'nouveau', VERIFIER.hash('y'),
                     InstructorRole.EXPLORATEURS)

    async def scenario():
        await gateway.sync_instructors([ADMIN, new])
        return await gateway.fetch_instructors()

    ids = sorted(i.id for i in run(scenario()))
    assert ids == ['admin-0', 'admin-2', 'ins-new']


def test_club_logos_upsert_whole_mapping(gateway):
    async def scenario():
        await gateway.update_club_logos({ClubType.EXPLORATEURS: '/one.png'})
        await gateway.update_club_logos({ClubType.AVENTURIERS: '/a.png',
                                         ClubType.EXPLORATEURS: '/two.png'})
        return await gateway.fetch_club_logos()

    assert run(scenario()) == {ClubType.AVENTURIERS: '/a.png', ClubType.EXPLORATEURS: '/two.png'}


def test_progress_table_has_composite_unique_constraint(db_app):
    with db_app.app_context():
        db.session.add(ProgressRow(student_id='st-1', session_id='S'))
        db.session.add(ProgressRow(student_id='st-1', session_id='S'))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()


def test_malformed_row_is_skipped_on_read(gateway, seed_backend, db_app, caplog):
    seed_backend(*CLASSES)
    with db_app.app_context():
        db.session.add(ClassRow(id='gd1', name='Guide', age=9, club='GUIDES'))
        db.session.commit()

    classes = run(gateway.fetch_classes())

    assert [c.id for c in classes] == ['av1', 'av2', 'ex1']
    assert any(r.getMessage() == 'skipping malformed row' for r in caplog.records)


def test_malformed_row_does_not_fail_initial_load(gateway, seed_backend, db_app, make_store):
    seed_backend(*CLASSES, make_student(1), SESSION, ADMIN)
    with db_app.app_context():
        db.session.add(ClassRow(id='gd1', name='Guide', age=9, club='GUIDES'))
        db.session.commit()
    store = make_store()

    async def scenario():
        coordinator = SyncCoordinator(store, gateway)
        status = await coordinator.load()
        coordinator.listener.stop()
        return status

    assert run(scenario()) is DbStatus.CONNECTED
    assert 'gd1' not in store.classes
