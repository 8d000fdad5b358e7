from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.crm.errors import ConflictError


@contextmanager
def atomic(session: Session, conflict_message: str = "record already exists") -> Iterator[Session]:
    """Commit once when the block succeeds, roll back on any error.

    Unique-constraint violations surface as ``ConflictError``.
    """
    try:
        yield session
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(conflict_message) from exc
    except Exception:
        session.rollback()
        raise
