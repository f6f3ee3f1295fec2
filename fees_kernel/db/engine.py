"""
Database engine and session factory.

One process-wide engine, created by ``init_engine_from_url``; callers take
sessions from ``get_session_factory()``.  The FeeEngine facade opens one
session per operation and each billing run worker opens one per student.

Dialects:
    PostgreSQL  READ COMMITTED; allocation rows are locked with
                SELECT ... FOR UPDATE, and write transactions can bound
                their wait with ``apply_lock_timeout``.
    SQLite      tests and local runs.  No row locks: every transaction
                starts with BEGIN IMMEDIATE, which takes the database write
                lock, so writers serialize on it.

Lock conflicts (PostgreSQL 55P03 / 40P01 / 40001, SQLite "database is
locked") are recognized by ``is_lock_conflict`` so the facade can report
them as concurrent updates and retry.
"""

import atexit

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from fees_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None

LOCK_CONFLICT_SQLSTATES = frozenset({
    "55P03",  # lock_not_available
    "40P01",  # deadlock_detected
    "40001",  # serialization_failure
})

_IN_MEMORY_SQLITE = ("sqlite://", "sqlite:///:memory:")


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 5,
    pool_timeout: int = 30,
) -> Engine:
    """
    Create the process-wide engine and session factory.

    Sessions do not expire on commit: DTOs built after a commit read the
    values just written without another round trip.

    Args:
        database_url: ``postgresql+psycopg2://...``, ``sqlite:///path`` or ``sqlite://``.
        echo: Log every SQL statement.
        pool_size: Pooled connections (PostgreSQL and file SQLite).
        max_overflow: Connections allowed beyond ``pool_size``.
        pool_timeout: Seconds to wait for a pooled connection.
    """
    global _engine, _SessionFactory

    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if database_url in _IN_MEMORY_SQLITE:
            # One shared connection, otherwise each session sees an empty database
            kwargs["poolclass"] = StaticPool
        else:
            kwargs.update(pool_size=pool_size, max_overflow=max_overflow, pool_timeout=pool_timeout)
        _engine = create_engine(database_url, echo=echo, **kwargs)
        _use_immediate_transactions(_engine)
    else:
        _engine = create_engine(
            database_url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            pool_pre_ping=True,
            isolation_level="READ COMMITTED",
        )

    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={
            "dialect": _engine.dialect.name,
            "pool_size": pool_size,
            "max_overflow": max_overflow,
        },
    )
    return _engine


def _use_immediate_transactions(engine: Engine) -> None:
    # pysqlite's own transaction handling would turn the outermost
    # SAVEPOINT release of an insert race into a COMMIT
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """
    Raises:
        RuntimeError: If init_engine_from_url() has not run.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


def apply_lock_timeout(session: Session, timeout_ms: int) -> None:
    """
    Bound how long the current PostgreSQL transaction waits for row locks.

    ``SET LOCAL`` ends with the transaction.  No-op for ``timeout_ms <= 0``
    and on SQLite, which waits out its busy timeout instead.
    """
    if timeout_ms <= 0:
        return
    if session.get_bind().dialect.name != "postgresql":
        return
    # SET takes no bind parameters
    session.execute(text(f"SET LOCAL lock_timeout = {int(timeout_ms)}"))


def is_lock_conflict(exc: BaseException) -> bool:
    """True if a DBAPI error means another writer held what this one needed."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in LOCK_CONFLICT_SQLSTATES:
        return True
    return "database is locked" in str(orig).lower()


def create_tables() -> None:
    """
    Create every table registered on ``Base.metadata``.

    Kernel models are always registered.  Billing run tables are registered
    by importing ``fees_batch.models`` first.
    """
    from fees_kernel.db.base import Base
    import fees_kernel.models  # noqa: F401

    Base.metadata.create_all(get_engine())


def drop_tables() -> None:
    from fees_kernel.db.base import Base

    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None
    _SessionFactory = None


@atexit.register
def _dispose_on_exit() -> None:
    if _engine is not None:
        _engine.dispose()
