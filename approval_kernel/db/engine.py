"""
approval_kernel.db.engine -- Engine, session factory and transaction scope.

Architecture position:
    Kernel > DB.  Imports only db/base.py and, lazily, the models (so that
    create_tables sees every table).

Invariants enforced:
    - Services never commit.  ``session_scope`` commits on success and rolls
      back on any exception.
    - Writers are serialized by optimistic versioning, not row locks, so the
      backend's READ COMMITTED default is enough.

Failure modes:
    - RuntimeError from the getters before ``init_engine_from_url``.
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from approval_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_MEMORY_URLS = ("sqlite://", "sqlite+pysqlite://")
_SQLITE_BUSY_TIMEOUT = 30

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
) -> Engine:
    """
    Create the process-wide engine and session factory.

    SQLite URLs get SAVEPOINT support and a busy timeout.  In-memory SQLite
    shares one connection through ``StaticPool``, which means overlapping
    transactions are impossible there; concurrent callers need a file URL.
    """
    global _engine, _SessionFactory

    if database_url.startswith("sqlite"):
        options: dict = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": _SQLITE_BUSY_TIMEOUT,
            },
        }
        if ":memory:" in database_url or database_url in _MEMORY_URLS:
            options["poolclass"] = StaticPool
        _engine = create_engine(database_url, echo=echo, **options)
        _enable_sqlite_savepoints(_engine)
    else:
        _engine = create_engine(
            database_url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            isolation_level="READ COMMITTED",
        )

    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "echo": echo},
    )
    return _engine


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """Have SQLAlchemy emit BEGIN itself so SAVEPOINTs nest inside it.

    pysqlite defers BEGIN until the first DML statement, and a SAVEPOINT
    issued before that behaves like a commit.  BEGIN IMMEDIATE takes the
    write lock up front, so competing writers wait on the busy timeout
    instead of failing on lock upgrade.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _require_factory() -> sessionmaker[Session]:
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session() -> Session:
    return _require_factory()()


def get_session_factory() -> sessionmaker[Session]:
    """The facade takes the factory so each operation gets its own session."""
    return _require_factory()


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None) -> Generator[Session, None, None]:
    """
    One unit of work: commit on normal exit, roll back and re-raise otherwise.

    Usage::

        with session_scope(factory) as session:
            WorkflowEngine(...).decide(...)
    """
    session = factory() if factory is not None else get_session()
    try:
        yield session
        session.commit()
        logger.debug("transaction_committed")
    except Exception:
        session.rollback()
        logger.debug("transaction_rolled_back")
        raise
    finally:
        session.close()


def create_tables() -> None:
    from approval_kernel.db.base import Base
    from approval_kernel.models import import_all_models

    import_all_models()
    Base.metadata.create_all(get_engine())


def drop_tables() -> None:
    """Drop every approval table.  Tests only."""
    from approval_kernel.db.base import Base
    from approval_kernel.models import import_all_models

    import_all_models()
    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None
    _SessionFactory = None
