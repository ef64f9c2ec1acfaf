import logging
from typing import Callable, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import settings
from .errors import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Attempts for a store transaction that loses a write conflict.
MAX_TRANSACTION_ATTEMPTS = 3

# Execution option marking a connection that only reads.
READ_ONLY = "checkout_read_only"


def make_engine(database_url: str):
    """
    Create an engine for the order and address tables.

    SQLite has no row locks, so every SQLite write transaction starts with
    ``BEGIN IMMEDIATE`` and writers queue on the database lock instead.
    Read-only sessions use a plain deferred ``BEGIN`` and never wait for it.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)

    sqlite_engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False, "timeout": 10},
    )

    @event.listens_for(sqlite_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _begin(conn):
        if conn.get_execution_options().get(READ_ONLY):
            conn.exec_driver_sql("BEGIN")
        else:
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return sqlite_engine


def make_session_factory(bind) -> sessionmaker:
    # expire_on_commit=False keeps loaded rows readable after the session closes.
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


# Create the SQLAlchemy engine from the process configuration.
engine = make_engine(settings.database_url)

# Create a configured "Session" class for database interactions.
SessionLocal = make_session_factory(engine)

# Base class for declarative ORM models.
Base = declarative_base()


def run_in_transaction(
    session_factory: sessionmaker,
    operation: Callable[[Session], T],
    name: str,
    attempts: int = MAX_TRANSACTION_ATTEMPTS,
) -> T:
    """
    Run ``operation`` inside one write transaction and commit it.

    Write conflicts (a constraint violation from a concurrent writer, or a
    locked database) roll back and rerun the whole operation. Domain errors
    raised by ``operation`` roll back and propagate unchanged.

    Raises:
        StoreUnavailableError: If the store fails or conflicts persist.
    """
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        session = session_factory()
        try:
            result = operation(session)
            session.commit()
            return result
        except (IntegrityError, OperationalError) as exc:
            session.rollback()
            last_error = exc
            logger.warning("%s conflicted (attempt %d/%d): %s", name, attempt, attempts, exc.orig)
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("%s failed: %s", name, exc)
            raise StoreUnavailableError(name, str(exc)) from exc
        finally:
            session.close()
    logger.error("%s gave up after %d attempts: %s", name, attempts, last_error)
    raise StoreUnavailableError(name, str(last_error)) from last_error


def run_read(session_factory: sessionmaker, operation: Callable[[Session], T], name: str) -> T:
    """
    Run a query-only ``operation`` in a session that takes no write lock.

    Raises:
        StoreUnavailableError: If the store fails.
    """
    session = session_factory()
    try:
        session.connection(execution_options={READ_ONLY: True})
        return operation(session)
    except SQLAlchemyError as exc:
        logger.error("%s failed: %s", name, exc)
        raise StoreUnavailableError(name, str(exc)) from exc
    finally:
        session.close()
