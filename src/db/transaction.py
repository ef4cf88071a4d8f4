"""Transaction boundaries for dispatch operations.

Each engine operation runs inside one ``transaction`` so a failed
precondition or constraint violation leaves no partial writes behind.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from core.exceptions import PersistenceError


@contextmanager
def transaction(session: Session) -> Generator[Session, None, None]:
    """Commit on success, roll back on any exception.

    Example:
        with session_factory() as session, transaction(session):
            repo = RideRepository(session)
            claimed = repo.claim("ride_1", "driver_1", now)
        # committed here unless the block raised

    Database-level operational failures (lock timeouts, lost connections)
    are re-raised as PersistenceError so callers see a transient error kind.
    """
    try:
        yield session
        session.commit()
    except OperationalError as e:
        session.rollback()
        raise PersistenceError(
            "Persistence store unavailable", details={"cause": str(e.orig)}
        ) from e
    except Exception:
        session.rollback()
        raise
