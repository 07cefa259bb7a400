"""
Database engine, session factory, and metadata shared across the application.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Generator, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, UnboundExecutionError
from sqlalchemy.orm import DeclarativeMeta, Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from studioops.core.config import settings

logger = logging.getLogger(__name__)

_DEFAULT_POOL_KWARGS: dict[str, Any] = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_timeout": 5,
    "pool_recycle": 300,
    "pool_pre_ping": True,
    "future": True,
}


def _build_engine_kwargs(db_url: str) -> dict[str, Any]:
    """SQLite needs a shared in-memory pool; everything else gets a QueuePool."""
    if db_url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}, "future": True}
        if ":memory:" in db_url or db_url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        return kwargs
    return dict(_DEFAULT_POOL_KWARGS)


def build_engine(db_url: str, echo: bool = False) -> Engine:
    built = create_engine(db_url, echo=echo, **_build_engine_kwargs(db_url))
    if db_url.startswith("sqlite"):
        event.listen(built, "connect", _enable_sqlite_foreign_keys)
    return built


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


engine: Engine = build_engine(settings.database_url, echo=settings.database_echo)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

Base: DeclarativeMeta = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Get database session with proper cleanup."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# Dialects on which SELECT ... FOR UPDATE takes real row locks.
ROW_LOCKING_DIALECTS = frozenset({"postgresql"})


def session_dialect(db: Session, default: str = "sqlite") -> str:
    """Lower-case dialect name of the database behind ``db``; ``default`` when unbound."""
    try:
        bind = db.get_bind()
    except UnboundExecutionError:
        return default
    return bind.dialect.name.lower()


T = TypeVar("T")
# Lock and serialization failures that a fresh attempt can resolve.
_RETRYABLE_PGCODES = {"40001", "40P01", "55P03"}
_RETRYABLE_ERROR_SNIPPETS = (
    "database is locked",
    "could not serialize access",
    "deadlock detected",
    "could not obtain lock",
)


def is_retryable_db_error(exc: BaseException) -> bool:
    """True for serialization, deadlock and lock-not-available failures."""
    if not isinstance(exc, DBAPIError):
        cause = exc.__cause__
        return cause is not None and is_retryable_db_error(cause)
    pgcode = getattr(getattr(exc, "orig", None), "pgcode", None)
    if pgcode in _RETRYABLE_PGCODES:
        return True
    message = str(exc).lower()
    return any(snippet in message for snippet in _RETRYABLE_ERROR_SNIPPETS)


def _retry_delay(attempt: int) -> float:
    base = 0.05 * (2 ** (attempt - 1))
    return base + random.uniform(0, 0.02 * attempt)


def with_db_retry(
    op_name: str,
    func: Callable[[], T],
    *,
    max_attempts: int = 2,
    should_retry: Callable[[BaseException], bool] = is_retryable_db_error,
) -> T:
    """
    Execute a DB operation, retrying lock and serialization failures.

    ``func`` must be self-contained (open and commit its own transaction) so a
    retry re-reads current state.
    """

    attempt = 1
    while True:
        try:
            return func()
        except Exception as exc:
            if attempt >= max_attempts or not should_retry(exc):
                raise

            delay = _retry_delay(attempt)
            logger.warning(
                "Serialization failure detected, retrying",
                extra={
                    "event": "db_retry",
                    "op": op_name,
                    "attempt": attempt,
                    "delay": delay,
                    "error": str(exc),
                },
            )
            time.sleep(delay)
            attempt += 1


__all__ = [
    "Base",
    "SessionLocal",
    "build_engine",
    "engine",
    "get_db",
    "ROW_LOCKING_DIALECTS",
    "is_retryable_db_error",
    "session_dialect",
    "with_db_retry",
]
