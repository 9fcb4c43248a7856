"""Flask application exposing the club engine over HTTP.

This module wires together the configuration, the database binding, the
observability middleware and the application context that owns the sync
engine. Every handler is a thin adapter: it validates the JSON payload, hands
the operation to the engine loop through :meth:`AppContext.call`, and renders
the resulting records. Mutations answer as soon as the local store is
committed; the backend write happens afterwards.

Endpoints (all JSON):

* ``GET /health``, ``GET /api/status``, ``POST /api/connect``.
* ``POST /api/login``, ``POST /api/logout``, ``GET /api/me``.
* ``/api/classes``, ``/api/students``, ``/api/sessions``: staff management.
* ``POST /api/progress/toggle`` (staff) and ``POST /api/progress/complete``
  (student): subject completion.
* ``/api/messages``: the admin/student conversations.
* ``/api/instructors`` and ``/api/club-logos``: administration.
* ``POST /api/content/lesson`` and ``POST /api/content/quiz``: generation.

Access follows the instructor roles: ADMIN staff see both clubs and alone
manage instructors; AVENTURIERS and EXPLORATEURS staff are confined to the
classes, students, sessions, progress, messages and logo of their own club.

The server is a single-device local process. The login session belongs to the
device (it is kept in the local cache and shared by every request this
process serves), so it is not meant to be exposed to several users at once.

Errors are answered as problem-details JSON carrying the request ID.
"""

from __future__ import annotations

import atexit
import functools
import os
from concurrent.futures import TimeoutError as EngineTimeout
from datetime import date
from typing import Any, Dict, Optional

from flask import Flask, current_app, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import BadRequest, Forbidden, HTTPException, NotFound, Unauthorized

import progress as calc
from app_logging import get_logger, get_request_id
from config import Config, resolve_database_url
from context import AppContext
from coordinator import AdminDeletionError, UnknownEntityError
from correlation_id_middleware import init_correlation_id
from credentials import ADMIN, STUDENT, Identity
from entities import (ADMIN_CHANNEL, ClassLevel, ClubType, InstructorRole, Session,
                      Student, Subject, icon_from_dict)
from local_cache import BACKEND, LocalCache
from models import db
from request_logging_middleware import init_request_logging

_logger = get_logger('clubsync.request')

EXTENSION_KEY = 'clubsync'


def engine() -> AppContext:
    return current_app.extensions[EXTENSION_KEY]


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequest('Missing JSON payload')
    return data


def _required(data: Dict[str, Any], *names: str) -> None:
    missing = [name for name in names if data.get(name) in (None, '')]
    if missing:
        raise BadRequest(f"{', '.join(missing)} required")


def _club(value: Any) -> ClubType:
    try:
        return ClubType(value)
    except ValueError:
        raise BadRequest(f'Unknown club {value!r}')


def requires(*identity_types: str, role: Optional[InstructorRole] = None):
    """Reject the request unless the device session is one of ``identity_types``.

    With ``role``, staff must also hold that instructor role.
    """

    def decorator(view):
        @functools.wraps(view)
        def wrapper(*args, **kwargs):
            identity = engine().identity
            if identity is None:
                raise Unauthorized('Login required')
            if identity.type not in identity_types:
                raise Forbidden('Not allowed for this account')
            if role is not None and identity.role != role.value:
                raise Forbidden(f'Requires the {role.value} role')
            g.identity = identity
            return view(*args, **kwargs)
        return wrapper
    return decorator


def _own_student_id(requested: Optional[str]) -> str:
    """Students act on themselves only; staff must name the student."""
    identity: Identity = g.identity
    if identity.type == STUDENT:
        if requested and requested != identity.id:
            raise Forbidden('Students can only access their own records')
        return identity.id
    if not requested:
        raise BadRequest('student_id required')
    _check_student_club(requested)
    return requested


def _staff_club() -> Optional[ClubType]:
    """The club a club-role instructor is confined to; None for administrators."""
    identity = engine().identity
    if identity is None or identity.type != ADMIN or identity.role == InstructorRole.ADMIN.value:
        return None
    return ClubType(identity.role)


def _check_club(club: ClubType) -> None:
    scope = _staff_club()
    if scope is not None and club is not scope:
        raise Forbidden(f'Access is limited to the {scope.value} club')


def _check_class_club(class_id: str) -> None:
    cls = engine().store.classes.get(class_id)
    if cls is not None:
        _check_club(cls.club)


def _check_student_club(student_id: str) -> None:
    student = engine().store.students.get(student_id)
    if student is not None:
        _check_class_club(student.class_id)


def _logos_payload(logos) -> Dict[str, Any]:
    store = engine().store
    return {club.value: {'logo': logo, 'custom': store.club_logos.is_custom(club)}
            for club, logo in logos.items()}


def _problem(status: int, title: str, detail: str):
    response = jsonify({
        'type': 'about:blank',
        'title': title,
        'status': status,
        'detail': detail,
        'request_id': getattr(g, 'request_id', None) or get_request_id(),
    })
    response.status_code = status
    response.mimetype = 'application/problem+json'
    return response


def create_app(config: Optional[Dict[str, Any]] = None, start_engine: bool = True) -> Flask:
    """Application factory used by both the server and tests.

    ``config`` overrides :class:`config.Config`. A backend override saved on
    this device wins over both. With ``start_engine`` the engine loop is
    started and the initial load runs before the factory returns.
    """
    app = Flask(__name__)
    app.config.from_object(Config)
    if config:
        app.config.update(config)
    override = LocalCache(app.config['LOCAL_CACHE_DIR']).read(BACKEND)
    if isinstance(override, dict):
        app.config['SQLALCHEMY_DATABASE_URI'] = resolve_database_url(
            app.config['SQLALCHEMY_DATABASE_URI'], override)
    db.init_app(app)

    with app.app_context():
        try:
            db.create_all()
        except SQLAlchemyError as exc:
            # A backend that is down at startup leaves the engine offline;
            # /api/status reports it and /api/connect retries.
            _logger.warning('database unavailable during table creation',
                            extra={'error': str(exc)})

    init_correlation_id(app)
    init_request_logging(app)

    ctx = AppContext(app)
    app.extensions[EXTENSION_KEY] = ctx
    if start_engine:
        ctx.start()
        atexit.register(ctx.shutdown)

    register_routes(app)
    register_error_handlers(app)
    return app


def register_routes(app: Flask) -> None:

    @app.route('/health')
    def healthcheck():
        """Lightweight endpoint used by router health checks."""
        return jsonify({'status': 'ok'}), 200

    # -- connectivity and session --------------------------------------------

    @app.route('/api/status', methods=['GET'])
    def api_status():
        ctx = engine()
        return jsonify({'db_status': ctx.status.value, 'listening': ctx.listener.active})

    @app.route('/api/connect', methods=['POST'])
    def api_connect():
        data = _json_body()
        _required(data, 'url')
        ok = engine().test_connection(data['url'], data.get('key') or '')
        return jsonify({'ok': ok, 'db_status': engine().status.value})

    @app.route('/api/login', methods=['POST'])
    def api_login():
        data = _json_body()
        _required(data, 'username', 'password')
        identity = engine().login(data['username'], data['password'])
        if identity is None:
            raise Unauthorized('Invalid credentials')
        return jsonify(identity.to_dict())

    @app.route('/api/logout', methods=['POST'])
    def api_logout():
        engine().logout()
        return '', 204

    @app.route('/api/me', methods=['GET'])
    def api_me():
        identity = engine().identity
        if identity is None:
            raise Unauthorized('Login required')
        return jsonify(identity.to_dict())

    # -- classes -------------------------------------------------------------

    @app.route('/api/classes', methods=['GET'])
    def api_get_classes():
        store = engine().store
        club = _club(request.args['club']) if request.args.get('club') else _staff_club()
        if club is not None:
            _check_club(club)
        classes = store.classes_of_club(club) if club else list(store.classes)
        return jsonify([c.to_dict() for c in sorted(classes, key=lambda c: c.age)])

    @app.route('/api/classes/<class_id>', methods=['PUT'])
    @requires(ADMIN)
    def api_put_class(class_id):
        ctx = engine()
        current = ctx.store.classes.get(class_id)
        if current is None:
            raise NotFound(f'Unknown class {class_id!r}')
        _check_club(current.club)
        data = _json_body()
        try:
            icon = icon_from_dict(data['icon']) if 'icon' in data else current.icon
        except (KeyError, TypeError, ValueError):
            raise BadRequest('icon must be {"kind": "emoji"|"image", "value": ...}')
        cls = ClassLevel(id=class_id, name=data.get('name') or current.name,
                         age=int(data.get('age') or current.age), club=current.club, icon=icon)
        updated = ctx.call(ctx.coordinator.update_class, cls, bool(data.get('apply_to_all')))
        return jsonify([c.to_dict() for c in updated])

    # -- students ------------------------------------------------------------

    @app.route('/api/students', methods=['GET'])
    @requires(ADMIN)
    def api_get_students():
        store = engine().store
        class_id = request.args.get('class_id')
        scope = _staff_club()
        if class_id:
            _check_class_club(class_id)
            students = store.students_in_class(class_id)
        elif scope is not None:
            club_classes = {c.id for c in store.classes_of_club(scope)}
            students = [s for s in store.students if s.class_id in club_classes]
        else:
            students = list(store.students)
        return jsonify([s.public_dict() for s in students])

    @app.route('/api/students', methods=['POST'])
    @requires(ADMIN)
    def api_post_student():
        ctx = engine()
        data = _json_body()
        _required(data, 'class_id', 'full_name', 'birth_date')
        _check_class_club(data['class_id'])
        details = {k: data[k] for k in ('address', 'mother_name', 'father_name',
                                        'emergency_contacts', 'diseases', 'allergies',
                                        'medications', 'photo') if k in data}
        student = ctx.call(ctx.coordinator.enroll_student, data['class_id'], data['full_name'],
                           data['birth_date'], data.get('temporary_password'), **details)
        return jsonify(student.public_dict()), 201

    @app.route('/api/students/<student_id>', methods=['PUT'])
    @requires(ADMIN)
    def api_put_student(student_id):
        ctx = engine()
        current = ctx.store.students.get(student_id)
        if current is None:
            raise NotFound(f'Unknown student {student_id!r}')
        _check_student_club(student_id)
        merged = {**current.to_dict(), **_json_body(), 'id': student_id}
        try:
            student = Student.from_dict(merged)
        except (KeyError, TypeError, ValueError) as exc:
            raise BadRequest(f'Invalid student: {exc}')
        _check_class_club(student.class_id)
        student = ctx.call(ctx.coordinator.update_student, student)
        return jsonify(student.public_dict())

    @app.route('/api/students/<student_id>/reset-password', methods=['POST'])
    @requires(ADMIN)
    def api_reset_password(student_id):
        ctx = engine()
        _check_student_club(student_id)
        temporary = ctx.call(ctx.coordinator.reset_student_password, student_id)
        return jsonify({'student_id': student_id, 'temporary_password': temporary})

    @app.route('/api/students/<student_id>/password', methods=['POST'])
    @requires(STUDENT)
    def api_change_password(student_id):
        ctx = engine()
        student_id = _own_student_id(student_id)
        data = _json_body()
        _required(data, 'password')
        password = data['password']
        ctx.call(ctx.coordinator.change_student_password, student_id, password,
                 ctx.credentials.hash(password))
        return '', 204

    @app.route('/api/students/<student_id>/sessions', methods=['GET'])
    @requires(ADMIN, STUDENT)
    def api_student_sessions(student_id):
        ctx = engine()
        student_id = _own_student_id(student_id)
        sessions = ctx.call(ctx.coordinator.visible_sessions, student_id, date.today())
        return jsonify([s.to_dict() for s in sessions])

    @app.route('/api/students/<student_id>/progress', methods=['GET'])
    @requires(ADMIN, STUDENT)
    def api_student_progress(student_id):
        ctx = engine()
        student_id = _own_student_id(student_id)
        records = ctx.store.progress_of_student(student_id)
        return jsonify({'student_id': student_id,
                        'average_score': ctx.call(ctx.coordinator.student_average, student_id),
                        'records': [p.to_dict() for p in records]})

    # -- sessions ------------------------------------------------------------

    @app.route('/api/sessions', methods=['GET'])
    @requires(ADMIN)
    def api_get_sessions():
        store = engine().store
        class_id = request.args.get('class_id')
        scope = _staff_club()
        if class_id:
            _check_class_club(class_id)
            sessions = store.sessions_for_class(class_id)
        else:
            sessions = sorted((s for s in store.sessions if scope is None or s.club is scope),
                              key=lambda s: (s.class_id, s.number))
        return jsonify([s.to_dict() for s in sessions])

    @app.route('/api/sessions', methods=['POST'])
    @requires(ADMIN)
    def api_post_session():
        ctx = engine()
        data = _json_body()
        _required(data, 'class_id')
        _check_class_club(data['class_id'])
        try:
            subjects = [Subject.from_dict(s) for s in data.get('subjects') or []]
        except (KeyError, TypeError, ValueError) as exc:
            raise BadRequest(f'Invalid subjects: {exc}')
        session = ctx.call(ctx.coordinator.create_session, data['class_id'], subjects,
                           data.get('availability_date'))
        return jsonify(session.to_dict()), 201

    @app.route('/api/sessions/<session_id>', methods=['PUT'])
    @requires(ADMIN)
    def api_put_session(session_id):
        ctx = engine()
        current = ctx.store.sessions.get(session_id)
        if current is None:
            raise NotFound(f'Unknown session {session_id!r}')
        _check_club(current.club)
        try:
            session = Session.from_dict({**current.to_dict(), **_json_body(), 'id': session_id})
        except (KeyError, TypeError, ValueError) as exc:
            raise BadRequest(f'Invalid session: {exc}')
        _check_club(session.club)
        session = ctx.call(ctx.coordinator.update_session, session)
        return jsonify(session.to_dict())

    @app.route('/api/sessions/<session_id>/subjects', methods=['POST'])
    @requires(ADMIN)
    def api_post_subject(session_id):
        ctx = engine()
        current = ctx.store.sessions.get(session_id)
        if current is not None:
            _check_club(current.club)
        data = _json_body()
        _required(data, 'name')
        subject = ctx.call(ctx.coordinator.add_subject, session_id, data['name'],
                           data.get('prerequisite') or '', data.get('content') or '')
        return jsonify(subject.to_dict()), 201

    # -- progress ------------------------------------------------------------

    @app.route('/api/progress/toggle', methods=['POST'])
    @requires(ADMIN)
    def api_toggle_subject():
        ctx = engine()
        data = _json_body()
        _required(data, 'student_id', 'session_id', 'subject_id')
        _check_student_club(data['student_id'])
        record = ctx.call(ctx.coordinator.toggle_subject, data['student_id'],
                          data['session_id'], data['subject_id'])
        return jsonify(record.to_dict())

    @app.route('/api/progress/complete', methods=['POST'])
    @requires(STUDENT)
    def api_complete_subject():
        ctx = engine()
        data = _json_body()
        _required(data, 'session_id', 'subject_id')
        student_id = _own_student_id(data.get('student_id'))
        session = ctx.store.sessions.get(data['session_id'])
        subject = session.subject(data['subject_id']) if session else None
        if subject is None:
            raise NotFound('Unknown session or subject')
        score = None
        if subject.quiz:
            answers = data.get('answers')
            if not isinstance(answers, list):
                raise BadRequest('answers required for a subject with a quiz')
            score = calc.quiz_score(subject.quiz, answers)
        record = ctx.call(ctx.coordinator.complete_subject, student_id, session.id,
                          subject.id, score)
        return jsonify({'passed': record is not None, 'quiz_score': score,
                        'progress': record.to_dict() if record else None})

    # -- messages ------------------------------------------------------------

    @app.route('/api/messages', methods=['GET'])
    @requires(ADMIN, STUDENT)
    def api_get_messages():
        student_id = _own_student_id(request.args.get('student_id'))
        return jsonify([m.to_dict() for m in engine().store.conversation(student_id)])

    @app.route('/api/messages', methods=['POST'])
    @requires(ADMIN, STUDENT)
    def api_post_message():
        ctx = engine()
        data = _json_body()
        _required(data, 'content')
        student_id = _own_student_id(data.get('student_id'))
        if g.identity.type == ADMIN:
            sender, receiver = ADMIN_CHANNEL, student_id
        else:
            sender, receiver = student_id, ADMIN_CHANNEL
        message = ctx.call(ctx.coordinator.send_message, sender, receiver, data['content'])
        return jsonify(message.to_dict()), 201

    @app.route('/api/messages/read', methods=['POST'])
    @requires(ADMIN, STUDENT)
    def api_mark_read():
        ctx = engine()
        data = request.get_json(silent=True) or {}
        student_id = _own_student_id(data.get('student_id'))
        if g.identity.type == ADMIN:
            viewer, other = ADMIN_CHANNEL, student_id
        else:
            viewer, other = student_id, ADMIN_CHANNEL
        count = ctx.call(ctx.coordinator.mark_conversation_read, viewer, other)
        return jsonify({'marked': count})

    @app.route('/api/messages/unread', methods=['GET'])
    @requires(ADMIN, STUDENT)
    def api_unread():
        store = engine().store
        if g.identity.type == ADMIN:
            counts = store.unread_for_admin()
            scope = _staff_club()
            if scope is not None:
                club_classes = {c.id for c in store.classes_of_club(scope)}
                counts = {sid: n for sid, n in counts.items()
                          if sid in store.students
                          and store.students.get(sid).class_id in club_classes}
            return jsonify(counts)
        return jsonify({g.identity.id: store.unread_for_student(g.identity.id)})

    # -- instructors ---------------------------------------------------------

    @app.route('/api/instructors', methods=['GET'])
    @requires(ADMIN, role=InstructorRole.ADMIN)
    def api_get_instructors():
        return jsonify([i.public_dict() for i in engine().store.instructors])

    @app.route('/api/instructors', methods=['POST'])
    @app.route('/api/instructors/<instructor_id>', methods=['PUT'])
    @requires(ADMIN, role=InstructorRole.ADMIN)
    def api_save_instructor(instructor_id=None):
        ctx = engine()
        data = _json_body()
        _required(data, 'full_name', 'username', 'role')
        try:
            role = InstructorRole(data['role'])
        except ValueError:
            raise BadRequest(f"Unknown role {data['role']!r}")
        password = data.get('password')
        password_hash = ctx.credentials.hash(password) if password else None
        instructor = ctx.call(ctx.coordinator.save_instructor, data['full_name'],
                              data['username'], role, password, instructor_id, password_hash)
        return jsonify(instructor.public_dict()), (201 if instructor_id is None else 200)

    @app.route('/api/instructors/<instructor_id>', methods=['DELETE'])
    @requires(ADMIN, role=InstructorRole.ADMIN)
    def api_delete_instructor(instructor_id):
        ctx = engine()
        ctx.call(ctx.coordinator.delete_instructor, instructor_id)
        return '', 204

    # -- club logos ----------------------------------------------------------

    @app.route('/api/club-logos', methods=['GET'])
    def api_get_logos():
        return jsonify(_logos_payload(engine().store.club_logos.snapshot()))

    @app.route('/api/club-logos/<club>', methods=['PUT'])
    @requires(ADMIN)
    def api_put_logo(club):
        ctx = engine()
        data = _json_body()
        _required(data, 'logo')
        club = _club(club)
        _check_club(club)
        logos = ctx.call(ctx.coordinator.set_club_logo, club, data['logo'])
        return jsonify(_logos_payload(logos))

    @app.route('/api/club-logos/<club>', methods=['DELETE'])
    @requires(ADMIN)
    def api_reset_logo(club):
        ctx = engine()
        club = _club(club)
        _check_club(club)
        logos = ctx.call(ctx.coordinator.reset_club_logo, club)
        return jsonify(_logos_payload(logos))

    # -- content generation --------------------------------------------------

    @app.route('/api/content/lesson', methods=['POST'])
    @requires(ADMIN)
    def api_generate_lesson():
        data = _json_body()
        _required(data, 'subject_name')
        html = engine().content.generate_lesson(data['subject_name'],
                                                data.get('objective') or '')
        return jsonify({'content': html})

    @app.route('/api/content/quiz', methods=['POST'])
    @requires(ADMIN)
    def api_generate_quiz():
        data = _json_body()
        _required(data, 'subject_name', 'content')
        questions = engine().content.generate_quiz(data['subject_name'], data['content'])
        return jsonify([q.to_dict() for q in questions])


def register_error_handlers(app: Flask) -> None:
    """Render every error as problem details."""

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return _problem(error.code or 500, error.name, error.description or '')

    @app.errorhandler(UnknownEntityError)
    def handle_unknown_entity(error):
        return _problem(404, 'Not Found', str(error.args[0] if error.args else error))

    @app.errorhandler(AdminDeletionError)
    def handle_admin_deletion(error):
        return _problem(403, 'Forbidden', str(error))

    @app.errorhandler(ValueError)
    def handle_invalid_value(error):
        return _problem(400, 'Bad Request', str(error))

    @app.errorhandler(EngineTimeout)
    def handle_engine_timeout(error):
        _logger.error('engine call timed out')
        return _problem(503, 'Service Unavailable', 'Engine busy, retry later')

    def handle_db_error(error):
        _logger.error('database operation failed', extra={'error': str(error)})
        return _problem(503, 'Service Unavailable', 'Database temporarily unavailable')

    app.register_error_handler(SQLAlchemyError, handle_db_error)


if __name__ == '__main__':
    # Development server; use a WSGI server in production.
    application = create_app()
    port = int(os.environ.get('PORT', 8000))
    application.run(host='0.0.0.0', port=port, debug=False)
