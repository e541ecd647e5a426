from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy.orm import Session


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands timestamps back naive; they are stored in UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@contextmanager
def unit_of_work(session: Session) -> Iterator[Session]:
    """
    Commit everything done on ``session`` inside the block, or roll it all back.

    Usage:
        with unit_of_work(db):
            ... DB work ...

    Reservation callers take their variant file locks *before* entering the
    block and keep them until it exits, so the commit happens under the lock.
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
