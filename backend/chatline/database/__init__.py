"""
Database engine, session factory, and metadata shared by the SQL directory store.

Engines are built on demand by the composition root rather than at import
time, so the in-memory backend never opens a connection.
"""

from __future__ import annotations

from datetime import datetime
import logging
import random
import time
from typing import Any, Callable, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeMeta, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

_DEFAULT_POOL_KWARGS: dict[str, Any] = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_timeout": 5,
    "pool_recycle": 300,
    "pool_pre_ping": True,
    "pool_use_lifo": True,
}

Base: DeclarativeMeta = declarative_base()


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_in_memory_sqlite(url: str) -> bool:
    if not _is_sqlite(url):
        return False
    database = make_url(url).database
    return database in (None, "", ":memory:") or "mode=memory" in url


def build_engine(db_url: str, echo: bool = False) -> Engine:
    """Create an engine for ``db_url`` with pool settings suited to its dialect."""
    if _is_in_memory_sqlite(db_url):
        # One shared connection, otherwise every checkout sees an empty database.
        engine = create_engine(
            db_url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    elif _is_sqlite(db_url):
        engine = create_engine(db_url, echo=echo, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(db_url, echo=echo, **_DEFAULT_POOL_KWARGS)

    @event.listens_for(engine, "connect")
    def receive_connect(dbapi_connection: Any, connection_record: Any) -> None:
        connection_record.info["connect_time"] = datetime.now()
        logger.debug("Database connection established")

    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def create_all(engine: Engine) -> None:
    """Create every table registered on ``Base``."""
    from .. import models  # noqa: F401  (registers mappers)

    Base.metadata.create_all(bind=engine)


T = TypeVar("T")
# Transient errors worth a retry: pooler restarts and SQLite writer contention.
_RETRYABLE_ERROR_SNIPPETS = (
    "server closed the connection",
    "ssl connection has been closed unexpectedly",
    "database is locked",
)


def _is_retryable_db_error(exc: OperationalError) -> bool:
    message = str(exc).lower()
    return any(snippet in message for snippet in _RETRYABLE_ERROR_SNIPPETS)


def _retry_delay(attempt: int) -> float:
    base = 0.05 * (2 ** (attempt - 1))
    return base + random.uniform(0, 0.02 * attempt)


def with_db_retry(op_name: str, func: Callable[[], T], *, max_attempts: int = 3) -> T:
    """
    Execute a DB operation with retries for transient disconnects.

    Must be called from a worker thread; it sleeps between attempts.
    """

    attempt = 1
    while True:
        try:
            return func()
        except OperationalError as exc:
            if attempt >= max_attempts or not _is_retryable_db_error(exc):
                raise

            delay = _retry_delay(attempt)
            logger.warning(
                "Transient DB failure detected, retrying",
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
    "build_engine",
    "build_session_factory",
    "create_all",
    "with_db_retry",
]
