from dataclasses import replace

import pytest

from change_feed import INSERT, UPDATE, ChangeEvent
from entities import ADMIN_CHANNEL, ClubType, Message, Progress
from listener import WATCHED_TABLES, ChangeFeedListener


def _message(is_read=False):
    return Message('m1', 'st-1', ADMIN_CHANNEL, 'Bonjour', '2024-01-01T10:00:00', is_read)


@pytest.fixture
def listener(store, recording_gateway):
    return ChangeFeedListener(store, recording_gateway())


def test_identical_student_is_a_no_op(store, listener):
    before = store.students.snapshot()
    version = store.students.version

    changed = listener.apply(ChangeEvent('students', UPDATE, store.students.get('st-1')))

    assert changed is False
    assert store.students.snapshot() is before
    assert store.students.version == version


def test_remote_student_edit_and_insert(store, listener):
    edited = replace(store.students.get('st-2'), address='2 rue Neuve')
    assert listener.apply(ChangeEvent('students', UPDATE, edited)) is True
    assert store.students.get('st-2').address == '2 rue Neuve'

    newcomer = replace(edited, id='st-42')
    assert listener.apply(ChangeEvent('students', INSERT, newcomer)) is True
    assert len(store.students) == 6


def test_duplicate_message_insert_is_ignored(store, listener):
    store.messages.put(_message())
    assert listener.apply(ChangeEvent('messages', INSERT, _message())) is False
    assert len(store.messages) == 1


def test_message_read_flag_never_goes_back(store, listener):
    store.messages.put(_message(is_read=True))
    assert listener.apply(ChangeEvent('messages', UPDATE, _message(is_read=False))) is False
    assert store.messages.get('m1').is_read is True


def test_update_for_unknown_message_is_ignored(store, listener):
    assert listener.apply(ChangeEvent('messages', UPDATE, _message(is_read=True))) is False
    assert len(store.messages) == 0


def test_progress_replaced_by_composite_key(store, listener):
    listener.apply(ChangeEvent('progress', INSERT, Progress('st-1', 'S', score=50)))
    listener.apply(ChangeEvent('progress', UPDATE, Progress('st-1', 'S', score=100,
                                                            completed=True)))
    assert len(store.progress) == 1
    assert store.progress_for('st-1', 'S').score == 100


def test_club_logo_changes(store, listener):
    event = ChangeEvent('club_config', UPDATE, {'id': 'EXPLORATEURS', 'logo': '/ex.png'})
    assert listener.apply(event) is True
    assert store.club_logos.get(ClubType.EXPLORATEURS) == '/ex.png'

    unknown = ChangeEvent('club_config', INSERT, {'id': 'GUIDES', 'logo': '/g.png'})
    assert listener.apply(unknown) is False


def test_start_and_stop_manage_all_subscriptions(store, recording_gateway):
    gateway = recording_gateway()
    listener = ChangeFeedListener(store, gateway)

    with listener.listening():
        assert listener.active
        assert sorted(s.table for s in gateway.subscriptions) == sorted(WATCHED_TABLES)
        listener.start()
        assert len(gateway.subscriptions) == len(WATCHED_TABLES)

    assert not listener.active
    assert all(not s.active for s in gateway.subscriptions)
