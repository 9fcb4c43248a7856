"""Application configuration module.

This module reads environment variables to configure the Flask application,
the relational backend and the sync engine. When deployed on Heroku the
platform provides a ``DATABASE_URL`` environment variable that points to a
Postgres database. Recent versions of SQLAlchemy expect the URL to start with
``postgresql://`` rather than ``postgres://``, so the prefix is normalised.
The module also loads any variables defined in a local ``.env`` file when
running locally.

A backend override entered by hand on a device (URL + key, kept in the local
device cache) wins over the environment; see :func:`resolve_database_url`.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy.engine import make_url


def normalise_database_url(url: str) -> str:
    """Return ``url`` with the legacy Heroku ``postgres://`` prefix fixed."""
    if url.startswith('postgres://'):
        # Only replace the first occurrence to avoid touching paths that may
        # legitimately contain the substring.
        return url.replace('postgres://', 'postgresql://', 1)
    return url


def resolve_database_url(default_url: str, override: Optional[dict] = None) -> str:
    """Pick the backend URL, giving a device override precedence.

    ``override`` is the ``backend`` blob of the local cache: ``{"url": ...,
    "key": ...}``. A non-empty key becomes the password of the URL.
    """
    if not override or not override.get('url'):
        return default_url
    url = make_url(normalise_database_url(override['url'].strip()))
    key = (override.get('key') or '').strip()
    if key:
        url = url.set(password=key)
    return url.render_as_string(hide_password=False)


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except ValueError:
        return default


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except ValueError:
        return default


class Config:
    """Base configuration class.

    Flask-SQLAlchemy reads ``SQLALCHEMY_DATABASE_URI`` from this class. If no
    database URL is provided the application falls back to a local SQLite
    database so the app still runs in development. The remaining attributes
    tune the sync engine.
    """

    # Load environment variables from a .env file if present.
    load_dotenv()

    SECRET_KEY = os.environ.get('SECRET_KEY', 'change-this-secret-in-prod')

    SQLALCHEMY_DATABASE_URI = (normalise_database_url(os.environ.get('DATABASE_URL', ''))
                               or 'sqlite:///clubsync.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Where the device cache (session identity, instructors, backend override) lives.
    LOCAL_CACHE_DIR = os.environ.get('LOCAL_CACHE_DIR', str(Path.home() / '.clubsync'))

    # Upper bound for a single pushed write; the push is abandoned (and logged)
    # after this many seconds.
    GATEWAY_TIMEOUT_SECONDS = _float_env('GATEWAY_TIMEOUT_SECONDS', 10.0)
    CONNECT_ATTEMPTS = _int_env('CONNECT_ATTEMPTS', 2)

    # How long an HTTP handler waits for the engine loop to run a call.
    ENGINE_CALL_TIMEOUT_SECONDS = _float_env('ENGINE_CALL_TIMEOUT_SECONDS', 15.0)

    # Course-content generation service. Disabled when no URL is configured.
    CONTENT_API_URL = os.environ.get('CONTENT_API_URL', '')
    CONTENT_API_KEY = os.environ.get('CONTENT_API_KEY', '')
    CONTENT_MODEL = os.environ.get('CONTENT_MODEL', 'lesson-writer')
    CONTENT_TIMEOUT_SECONDS = _float_env('CONTENT_TIMEOUT_SECONDS', 30.0)
