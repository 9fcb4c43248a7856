"""Database resilience helpers."""

from __future__ import annotations

import time
from typing import Callable, Tuple, Type, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from app_logging import get_logger

T = TypeVar("T")

_logger = get_logger("clubsync.db")

# Table read by the connectivity probe; it is seeded first and never emptied.
PROBE_TABLE = "classes"


def retry_with_backoff(
    func: Callable[[], T],
    attempts: int = 3,
    base_delay: float = 0.1,
    max_total_delay: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (SQLAlchemyError,),
) -> T:
    """Retry ``func`` with exponential backoff.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates on the first failure. The total sleep never exceeds
    ``max_total_delay`` so start-up stays fast when the backend is down.
    """

    last_exc: BaseException | None = None
    total_delay = 0.0
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as exc:
            last_exc = exc
            _logger.warning(
                "transient operation failed", extra={"attempt": attempt, "error": str(exc)}
            )
            if attempt >= attempts or total_delay >= max_total_delay:
                break
            delay = min(base_delay * (2 ** (attempt - 1)), max_total_delay - total_delay)
            if delay <= 0:
                continue
            time.sleep(delay)
            total_delay += delay
    if last_exc:
        raise last_exc
    raise RuntimeError("retry_with_backoff failed without exception")


def probe(connection) -> None:
    """Lightweight read against the probe table; raises when unreachable."""

    connection.execute(text(f"SELECT id FROM {PROBE_TABLE} LIMIT 1")).fetchall()


def probe_url(url: str, attempts: int = 2) -> bool:
    """Probe a backend that the running application is not bound to.

    Used by the manual "connect" action to test an override before it is
    adopted. The throwaway engine is always disposed.
    """

    try:
        engine = create_engine(url)
    except (SQLAlchemyError, ValueError, ImportError) as exc:
        _logger.warning("invalid backend url", extra={"error": str(exc)})
        return False
    try:
        def _check() -> None:
            with engine.connect() as connection:
                probe(connection)

        retry_with_backoff(_check, attempts=attempts)
        return True
    except SQLAlchemyError:
        return False
    finally:
        engine.dispose()


__all__ = ["PROBE_TABLE", "probe", "probe_url", "retry_with_backoff"]
