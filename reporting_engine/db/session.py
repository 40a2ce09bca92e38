"""Engine, session factory and read-snapshot helpers."""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from functools import lru_cache

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from reporting_engine.core.config import get_settings
from reporting_engine.core.errors import ReportTimeoutError

QUERY_CANCELED_SQLSTATE = "57014"


@lru_cache
def get_engine() -> Engine:
    """Create the process-wide engine on first use."""

    settings = get_settings()
    return create_engine(settings.database_url, pool_pre_ping=True, future=True)


@lru_cache
def get_session_factory() -> sessionmaker[Session]:
    return sessionmaker(bind=get_engine(), autoflush=False, autocommit=False, future=True)


class ReportDeadline:
    """Wall-clock budget shared by every query of one report request."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        self._expires_at = time.monotonic() + timeout_seconds

    def remaining(self) -> float:
        return self._expires_at - time.monotonic()

    def check(self) -> None:
        if self.remaining() <= 0:
            raise ReportTimeoutError(
                f"Report exceeded the {self.timeout_seconds:g}s time budget and was aborted."
            )


@contextmanager
def read_snapshot(db: Session, *, timeout_seconds: float) -> Iterator[ReportDeadline]:
    """Run every rollup of one report inside a single read transaction.

    On PostgreSQL the transaction is pinned to REPEATABLE READ so that the
    by-user, by-project and by-date aggregates observe the same snapshot, and a
    statement timeout bounds each query. Other dialects rely on the session's
    single transaction. The transaction is closed with a rollback only when
    this helper opened it.
    """

    owns_transaction = not db.in_transaction()
    deadline = ReportDeadline(timeout_seconds)
    if owns_transaction and db.get_bind().dialect.name == "postgresql":
        db.execute(text("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ READ ONLY"))
        db.execute(text(f"SET LOCAL statement_timeout = {int(timeout_seconds * 1000)}"))
    try:
        yield deadline
        deadline.check()
    except DBAPIError as exc:
        if getattr(exc.orig, "sqlstate", None) == QUERY_CANCELED_SQLSTATE:
            raise ReportTimeoutError(
                f"Report exceeded the {timeout_seconds:g}s time budget and was aborted."
            ) from exc
        raise
    finally:
        if owns_transaction:
            db.rollback()
