"""The application context: one explicit object owning the engine.

:class:`AppContext` is built once per process by ``app.create_app`` and torn
down at shutdown. It constructs the store, the gateway, the listener and the
coordinator, wires them together, and owns the device cache and the current
session identity. Nothing in the engine is a module-level singleton.

The engine runs on its own asyncio loop (:class:`EngineRunner`) in a daemon
thread. HTTP handlers hand work to it with :meth:`AppContext.call`, which
carries the request's log context across, so pushes triggered by a request
log with that request's correlation ID.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from typing import Any, Callable, Optional

from flask import Flask
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from app_logging import get_log_context, get_logger, merge_log_context, set_request_id
from config import resolve_database_url
from content_service import ContentGenerator
from coordinator import DbStatus, SyncCoordinator
from credentials import CredentialVerifier, Identity
from db_utils import probe_url
from entities import Instructor
from gateway import RemoteGateway
from listener import ChangeFeedListener
from local_cache import BACKEND, INSTRUCTORS, SESSION, LocalCache
from seed import initial_store

_logger = get_logger('clubsync.sync')


class EngineRunner:
    """An asyncio loop running forever on a background thread."""

    def __init__(self, timeout: float = 15.0) -> None:
        self.timeout = timeout
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self.loop = asyncio.new_event_loop()
        ready = threading.Event()

        def _serve() -> None:
            asyncio.set_event_loop(self.loop)
            self.loop.call_soon(ready.set)
            self.loop.run_forever()

        self._thread = threading.Thread(target=_serve, name='engine-loop', daemon=True)
        self._thread.start()
        ready.wait()

    def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run ``fn`` on the loop and wait for its result.

        ``fn`` may be a plain function or a coroutine function. Exceptions it
        raises are re-raised in the caller's thread.
        """
        if not self.running:
            raise RuntimeError('engine loop is not running')
        log_context = dict(get_log_context())

        async def _invoke() -> Any:
            if log_context.get('request_id'):
                set_request_id(log_context['request_id'])
            merge_log_context(**log_context)
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

        future = asyncio.run_coroutine_threadsafe(_invoke(), self.loop)
        return future.result(self.timeout)

    def stop(self) -> None:
        if not self.running:
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join()
        self.loop.close()
        self._thread = None


class AppContext:
    def __init__(self, app: Flask, cache: Optional[LocalCache] = None,
                 content: Optional[ContentGenerator] = None,
                 runner: Optional[EngineRunner] = None) -> None:
        config = app.config
        self.app = app
        self.cache = cache or LocalCache(config['LOCAL_CACHE_DIR'])
        self.credentials = CredentialVerifier()
        self.store = initial_store(self.credentials, self._cached_instructors())
        self.gateway = RemoteGateway(app, timeout=config['GATEWAY_TIMEOUT_SECONDS'],
                                     connect_attempts=config['CONNECT_ATTEMPTS'])
        self.listener = ChangeFeedListener(self.store, self.gateway)
        self.coordinator = SyncCoordinator(self.store, self.gateway, self.listener,
                                           credentials=self.credentials, cache=self.cache)
        self.content = content or ContentGenerator(
            config['CONTENT_API_URL'], api_key=config['CONTENT_API_KEY'],
            model=config['CONTENT_MODEL'], timeout=config['CONTENT_TIMEOUT_SECONDS'])
        self.runner = runner or EngineRunner(timeout=config['ENGINE_CALL_TIMEOUT_SECONDS'])
        self.identity: Optional[Identity] = self._restore_identity()

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> DbStatus:
        self.runner.start()
        return self.call(self.coordinator.load)

    def shutdown(self) -> None:
        if self.runner.running:
            self.call(self.coordinator.drain)
            self.call(self.listener.stop)
            self.runner.stop()
        self.gateway.close()
        _logger.info('engine stopped')

    def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return self.runner.call(fn, *args, **kwargs)

    @property
    def status(self) -> DbStatus:
        return self.coordinator.status

    # -- device cache --------------------------------------------------------

    def _cached_instructors(self) -> list:
        blob = self.cache.read(INSTRUCTORS)
        if not blob:
            return []
        try:
            return [Instructor.from_dict(item) for item in blob]
        except (KeyError, TypeError, ValueError) as exc:
            _logger.warning('discarding cached instructors', extra={'error': repr(exc)})
            self.cache.remove(INSTRUCTORS)
            return []

    def _restore_identity(self) -> Optional[Identity]:
        blob = self.cache.read(SESSION)
        if blob is None:
            return None
        try:
            return Identity.from_dict(blob)
        except (AttributeError, TypeError, ValueError):
            _logger.warning('discarding corrupted session blob')
            self.cache.remove(SESSION)
            return None

    # -- authentication ------------------------------------------------------

    def login(self, username: str, password: str) -> Optional[Identity]:
        """Check credentials against store snapshots in the calling thread.

        Password checks never run on the engine loop.
        """
        identity = self.credentials.authenticate(self.store.instructors.snapshot(),
                                                 self.store.students.snapshot(),
                                                 username, password)
        if identity is None:
            _logger.info('login rejected')
            return None
        self.identity = identity
        self.cache.write(SESSION, identity.to_dict())
        _logger.info('login', extra={'identity_type': identity.type})
        return identity

    def logout(self) -> None:
        self.identity = None
        self.cache.remove(SESSION)

    # -- backend override ----------------------------------------------------

    def test_connection(self, url: str, key: str = '') -> bool:
        """Save a hand-entered backend, probe it and report pass/fail.

        The override is adopted at next start. When it points at the backend
        this process is already bound to, the data is reloaded right away.
        """
        override = {'url': url, 'key': key}
        self.cache.write(BACKEND, override)
        try:
            target = resolve_database_url(url, override)
        except ArgumentError as exc:
            _logger.warning('invalid backend url', extra={'error': str(exc)})
            return False
        ok = probe_url(target, attempts=self.app.config['CONNECT_ATTEMPTS'])
        _logger.info('manual connection test', extra={'ok': ok})
        current = self.app.config['SQLALCHEMY_DATABASE_URI']
        if ok and self.runner.running and _same_backend(target, current):
            self.call(self.coordinator.load)
        return ok


def _same_backend(first: str, second: str) -> bool:
    try:
        a, b = make_url(first), make_url(second)
    except ArgumentError:
        return False
    return (a.drivername, a.host, a.port, a.database) == (b.drivername, b.host, b.port, b.database)
