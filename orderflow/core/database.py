"""
Database engine and session management.

The engine is built from explicit settings rather than at import time so that
tests and the app factory can each own an isolated store.
"""

import time

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from orderflow.core.config import DatabaseSettings
from orderflow.core.logging import get_logger

logger = get_logger(__name__)

SLOW_QUERY_SECONDS = 0.5


def create_db_engine(db_settings: DatabaseSettings) -> Engine:
    """
    Create the SQLAlchemy engine.

    SQLite transactions are opened with ``BEGIN IMMEDIATE`` so the
    read-modify-write done by the repository holds the write lock from its
    first read; other backends rely on ``SELECT ... FOR UPDATE``.
    """
    if db_settings.is_sqlite:
        engine = create_engine(
            db_settings.DATABASE_URL,
            echo=db_settings.DB_ECHO,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _install_sqlite_locking(engine)
    else:
        engine = create_engine(
            db_settings.DATABASE_URL,
            echo=db_settings.DB_ECHO,
            pool_pre_ping=db_settings.DB_POOL_PRE_PING,
        )

    _install_slow_query_logging(engine)
    return engine


def _install_sqlite_locking(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _install_slow_query_logging(engine: Engine) -> None:
    @event.listens_for(engine, "before_cursor_execute")
    def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault("query_start_time", []).append(time.perf_counter())

    @event.listens_for(engine, "after_cursor_execute")
    def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        total_time = time.perf_counter() - conn.info["query_start_time"].pop()
        if total_time > SLOW_QUERY_SECONDS:
            logger.warning(
                f"Slow query detected ({total_time:.4f}s)",
                extra={"statement": statement[:100], "duration_seconds": total_time},
            )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create tables for all registered models."""
    from orderflow.models.base.base_model import Base
    import orderflow.models  # noqa: F401  (registers mappers)

    Base.metadata.create_all(bind=engine)
    logger.info("Database schema initialized", extra={"dialect": engine.dialect.name})

