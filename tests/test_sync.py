"""End-to-end sync between clients sharing one backend through the change feed."""

import asyncio
from dataclasses import replace

from conftest import ADMIN, CLASSES, SESSION, make_student
from change_feed import INSERT, UPDATE
from coordinator import DbStatus, SyncCoordinator
from entities import ADMIN_CHANNEL, ClubType, ImageRef
from models import ClassRow, MessageRow, StudentRow, db


def run(coro):
    return asyncio.run(coro)


async def settle(*coordinators):
    for coordinator in coordinators:
        await coordinator.drain()
    # Change events arrive through call_soon_threadsafe from the gateway thread.
    await asyncio.sleep(0.05)


def test_message_round_trip_without_duplicate(gateway, seed_backend, make_store, db_app):
    seed_backend(*CLASSES, make_student(1), SESSION, ADMIN)
    student_device, admin_device = make_store(), make_store()

    async def scenario():
        student = SyncCoordinator(student_device, gateway)
        admin = SyncCoordinator(admin_device, gateway)
        await student.load()
        await admin.load()
        sent = student.send_message('st-1', ADMIN_CHANNEL, 'Bonjour')
        await settle(student, admin)
        student.listener.stop()
        admin.listener.stop()
        return sent

    sent = run(scenario())
    assert student_device.messages.snapshot() == (sent,)
    assert admin_device.messages.snapshot() == (sent,)
    assert admin_device.unread_for_admin() == {'st-1': 1}
    with db_app.app_context():
        assert db.session.get(MessageRow, sent.id) is not None


def test_progress_reaches_other_client_and_last_write_wins(gateway, seed_backend, make_store):
    seed_backend(*CLASSES, make_student(1), SESSION, ADMIN)
    first_device, second_device = make_store(), make_store()

    async def scenario():
        first = SyncCoordinator(first_device, gateway)
        second = SyncCoordinator(second_device, gateway)
        await first.load()
        await second.load()

        first.toggle_subject('st-1', 'S', 's1')
        await settle(first, second)
        seen_by_second = second_device.progress_for('st-1', 'S')

        # Concurrent edits of the same record: both devices end on the last push.
        second.toggle_subject('st-1', 'S', 's2')
        first.toggle_subject('st-1', 'S', 's1')
        await settle(first, second)

        first.listener.stop()
        second.listener.stop()
        return seen_by_second, await gateway.fetch_progress()

    seen_by_second, remote = run(scenario())
    assert seen_by_second.completed_subjects == {'s1'}
    assert len(remote) == 1
    assert first_device.progress_for('st-1', 'S') == remote[0]
    assert second_device.progress_for('st-1', 'S') == remote[0]


def test_own_echo_leaves_store_untouched(gateway, seed_backend, make_store):
    seed_backend(*CLASSES, make_student(1), SESSION, ADMIN)
    device = make_store()
    received = []

    async def scenario():
        coordinator = SyncCoordinator(device, gateway)
        await coordinator.load()
        gateway.subscribe('progress', received.append)
        record = coordinator.toggle_subject('st-1', 'S', 's2')
        version = device.progress.version
        snapshot = device.progress.snapshot()
        await settle(coordinator)
        coordinator.listener.stop()
        return record, version, snapshot

    record, version, snapshot = run(scenario())
    assert [(e.kind, e.new) for e in received] == [(INSERT, record)]
    assert device.progress.version == version
    assert device.progress.snapshot() is snapshot


def test_remote_student_edit_is_merged(gateway, seed_backend, make_store):
    seed_backend(*CLASSES, make_student(1), SESSION, ADMIN)
    staff_device, student_device = make_store(), make_store()

    async def scenario():
        staff = SyncCoordinator(staff_device, gateway)
        student = SyncCoordinator(student_device, gateway)
        await staff.load()
        await student.load()
        student.change_student_password('st-1', 'secret42')
        await settle(staff, student)
        staff.listener.stop()
        student.listener.stop()

    run(scenario())
    assert staff_device.students.get('st-1').password_changed is True
    assert staff_device.students.get('st-1') == student_device.students.get('st-1')


def test_bulk_icon_assignment_reaches_backend(gateway, seed_backend, make_store, db_app):
    seed_backend(*CLASSES, ADMIN)
    device = make_store()
    icon = ImageRef('https://example.org/club.png')

    async def scenario():
        coordinator = SyncCoordinator(device, gateway)
        await coordinator.load()
        coordinator.update_class(replace(device.classes.get('av2'), icon=icon),
                                 apply_to_all=True)
        await settle(coordinator)
        coordinator.listener.stop()

    run(scenario())
    assert [c.icon == icon for c in device.classes] == [True, True, False]
    with db_app.app_context():
        rows = {row.id: (row.icon_kind, row.icon_value) for row in ClassRow.query.all()}
    assert rows['av1'] == rows['av2'] == ('image', icon.uri)
    assert rows['ex1'][0] == 'emoji'


def test_logo_change_reaches_other_client(gateway, seed_backend, make_store):
    seed_backend(*CLASSES, ADMIN)
    first_device, second_device = make_store(), make_store()

    async def scenario():
        first = SyncCoordinator(first_device, gateway)
        second = SyncCoordinator(second_device, gateway)
        await first.load()
        await second.load()
        first.set_club_logo(ClubType.EXPLORATEURS, '/explorateurs-2025.png')
        await settle(first, second)
        first.listener.stop()
        second.listener.stop()

    run(scenario())
    assert second_device.club_logos.get(ClubType.EXPLORATEURS) == '/explorateurs-2025.png'


def test_offline_backend_sets_error_and_skips_pushes(unreachable_gateway, make_store):
    device = make_store()

    async def scenario():
        coordinator = SyncCoordinator(device, unreachable_gateway)
        status = await coordinator.load()
        record = coordinator.toggle_subject('st-1', 'S', 's1')
        pending = len(coordinator._pending)
        return status, record, pending

    status, record, pending = run(scenario())
    assert status is DbStatus.ERROR
    assert device.progress_for('st-1', 'S') == record
    assert pending == 0
    assert unreachable_gateway.feed.subscriber_count() == 0


def test_rolled_back_changes_are_not_published(gateway, db_app):
    received = []

    async def scenario():
        gateway.subscribe('students', received.append)
        with db_app.app_context():
            student = make_student(7)
            draft = StudentRow(id=student.id)
            draft.assign(student)
            db.session.add(draft)
            db.session.flush()
            db.session.rollback()
        await gateway.upsert_student(make_student(8))
        await gateway.upsert_student(replace(make_student(8), address='ici'))
        await asyncio.sleep(0.05)

    run(scenario())
    assert [(e.kind, e.new.id) for e in received] == [(INSERT, 'st-8'), (UPDATE, 'st-8')]
