"""
bidtab/uow.py

Bounded unit of work around the Flask-SQLAlchemy session.

Pattern used by every service (tabulation, leveling, award):

    with unit_of_work() as session:
        repo = BiddingRepository(session)
        ...             # flush() as needed, never commit() inside

- Success: commit (or rollback when read_only=True).
- Any exception: rollback, then re-raise.
- OperationalError (lock contention, statement timeout) -> TransientError / TransactionTimeout.
- Elapsed time above the bound -> TransactionTimeout, nothing is committed.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .errors import TransactionTimeout, TransientError
from .extensions import db

logger = logging.getLogger(__name__)

_TIMEOUT_MARKERS = ("statement timeout", "lock timeout", "canceling statement", "timed out")


def _timeout_limit(timeout_seconds: Optional[float]) -> float:
    if timeout_seconds is not None:
        return float(timeout_seconds)
    return float(current_app.config.get("TRANSACTION_TIMEOUT_SECONDS", 10))


def _apply_statement_timeout(session: Session, limit: float) -> None:
    """PostgreSQL enforces the bound server-side too; other dialects rely on the elapsed check."""
    bind = session.get_bind()
    if bind.dialect.name != "postgresql" or limit <= 0:
        return
    session.execute(text(f"SET LOCAL statement_timeout = {int(limit * 1000)}"))


def _is_timeout(exc: OperationalError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return any(marker in message for marker in _TIMEOUT_MARKERS)


@contextmanager
def unit_of_work(
    timeout_seconds: Optional[float] = None,
    *,
    read_only: bool = False,
    name: str = "unit_of_work",
) -> Iterator[Session]:
    """Yield the transactional session; commit/rollback is owned here."""
    session = db.session
    limit = _timeout_limit(timeout_seconds)
    started = time.monotonic()

    try:
        _apply_statement_timeout(session, limit)
        yield session

        elapsed = time.monotonic() - started
        if limit > 0 and elapsed > limit:
            raise TransactionTimeout(
                f"{name} exceeded {limit:g}s (took {elapsed:.2f}s); nothing was committed",
                details={"operation": name, "limit_seconds": limit, "elapsed_seconds": round(elapsed, 3)},
            )

        if read_only:
            session.rollback()
        else:
            session.commit()
    except OperationalError as exc:
        session.rollback()
        logger.warning("%s aborted by the database: %s", name, exc)
        if _is_timeout(exc):
            raise TransactionTimeout(
                f"{name} timed out in the database; retry the operation",
                details={"operation": name},
            ) from exc
        raise TransientError(
            f"{name} was aborted due to contention; retry the operation",
            details={"operation": name},
        ) from exc
    except Exception:
        session.rollback()
        raise
