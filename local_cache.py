"""Device-local cache of small JSON blobs.

Three independent keys are used: ``session`` (who is logged in on this
device), ``instructors`` (offline seed of the staff list) and ``backend`` (a
hand-entered backend URL + key). Each blob is one JSON file. A blob that
cannot be decoded is deleted and reported as missing.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

from app_logging import get_logger

SESSION = 'session'
INSTRUCTORS = 'instructors'
BACKEND = 'backend'

_logger = get_logger('clubsync.cache')


class LocalCache:
    def __init__(self, directory: str) -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f'{key}.json'

    def read(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding='utf-8'))
        except (ValueError, UnicodeDecodeError) as exc:
            _logger.warning('discarding corrupted cache entry',
                            extra={'cache_key': key, 'error': str(exc)})
            self.remove(key)
            return None

    def write(self, key: str, value: Any) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp = path.with_suffix('.tmp')
        tmp.write_text(json.dumps(value, ensure_ascii=False), encoding='utf-8')
        os.replace(tmp, path)

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
