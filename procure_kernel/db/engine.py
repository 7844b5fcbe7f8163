"""
Engine and session management.

One process-wide engine, set up by ``init_engine_from_url()``, and a
session factory with ``expire_on_commit=False`` so DTOs can be built from
objects after the unit of work commits.

Locking:
    PostgreSQL runs at READ COMMITTED and the ledger takes row locks with
    ``SELECT ... FOR UPDATE``.  SQLite ignores FOR UPDATE, so every
    transaction starts with ``BEGIN IMMEDIATE`` instead; that takes the
    database write lock up front and serializes the same read-check-write
    sequences.  Writers that wait longer than the busy timeout fail with
    ``OperationalError: database is locked``.
"""

import atexit
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from procure_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

SQLITE_BUSY_TIMEOUT_SECONDS = 30

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _sqlite_options() -> dict[str, Any]:
    return {
        "connect_args": {
            "check_same_thread": False,
            "timeout": SQLITE_BUSY_TIMEOUT_SECONDS,
        },
    }


def _server_options(pool_size: int, max_overflow: int, pool_timeout: int) -> dict[str, Any]:
    return {
        "poolclass": QueuePool,
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_timeout": pool_timeout,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
        "isolation_level": "READ COMMITTED",
    }


def _begin_immediate_on(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        # pysqlite must not issue its own BEGIN; the "begin" hook does
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_timeout: int = 30,
) -> Engine:
    """
    Create the process engine for ``database_url``, replacing any previous one.

    Pool settings apply to server databases only; SQLite file databases get
    a busy timeout and ``BEGIN IMMEDIATE`` transactions.
    """
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()

    dialect = make_url(database_url).get_backend_name()
    if dialect == "sqlite":
        _engine = create_engine(database_url, echo=echo, **_sqlite_options())
        _begin_immediate_on(_engine)
    else:
        _engine = create_engine(
            database_url, echo=echo, **_server_options(pool_size, max_overflow, pool_timeout),
        )
    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info("engine_initialized", extra={"dialect": dialect, "echo": echo})
    return _engine


def _require_factory() -> sessionmaker[Session]:
    if _session_factory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _session_factory


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session() -> Session:
    return _require_factory()()


def get_session_factory() -> sessionmaker[Session]:
    """Factory for callers that open their own sessions, e.g. one per worker thread."""
    return _require_factory()


@contextmanager
def session_scope() -> Iterator[Session]:
    """
    One unit of work: commit on success, roll back and re-raise on error.

    Usage::

        with session_scope() as session:
            BudgetLedgerService(session).create_budget_code(...)
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def _metadata():
    from procure_kernel.db.base import Base
    import procure_kernel.models  # noqa: F401  registers every table

    return Base.metadata


def create_tables() -> None:
    _metadata().create_all(get_engine())


def drop_tables() -> None:
    """Drop every table. Tests only."""
    _metadata().drop_all(get_engine())


def reset_engine() -> None:
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


atexit.register(reset_engine)
