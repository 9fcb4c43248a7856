from local_cache import BACKEND, INSTRUCTORS, SESSION, LocalCache


def test_keys_are_independent(tmp_path):
    cache = LocalCache(str(tmp_path / 'device'))
    cache.write(SESSION, {'type': 'admin', 'id': 'admin-0', 'role': 'ADMIN'})
    cache.write(BACKEND, {'url': 'postgresql://db.example.org/club', 'key': 'k'})

    assert cache.read(SESSION)['id'] == 'admin-0'
    assert cache.read(BACKEND)['url'].startswith('postgresql://')
    assert cache.read(INSTRUCTORS) is None

    cache.remove(SESSION)
    cache.remove(SESSION)
    assert cache.read(SESSION) is None
    assert cache.read(BACKEND) is not None


def test_corrupted_blob_is_discarded(tmp_path, caplog):
    cache = LocalCache(str(tmp_path))
    (tmp_path / 'session.json').write_text('{"type": "adm', encoding='utf-8')

    assert cache.read(SESSION) is None
    assert not (tmp_path / 'session.json').exists()
    assert any(r.getMessage() == 'discarding corrupted cache entry' for r in caplog.records)


def test_write_replaces_whole_blob(tmp_path):
    cache = LocalCache(str(tmp_path))
    cache.write(INSTRUCTORS, [{'id': 'a'}, {'id': 'b'}])
    cache.write(INSTRUCTORS, [{'id': 'a'}])
    assert cache.read(INSTRUCTORS) == [{'id': 'a'}]
    assert not list(tmp_path.glob('*.tmp'))
