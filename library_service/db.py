import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import sessionmaker

from .errors import InfrastructureError
from .models import Base

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores REFERENCES clauses unless asked per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url, echo=False):
    engine = create_engine(url, future=True, echo=echo)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def build_session_factory(engine):
    return sessionmaker(
        bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
    )


def create_tables(engine):
    Base.metadata.create_all(engine)


@contextmanager
def session_scope(session_factory):
    """
    One unit of work: commit when the block finishes, roll back on any error.

    Driver-level failures (lost connection, lock timeout, serialization
    conflict) surface as InfrastructureError so callers can tell them apart
    from domain errors. IntegrityError is re-raised untouched; the loan code
    translates the open-loan index violation itself.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except IntegrityError:
        session.rollback()
        raise
    except DBAPIError as exc:
        session.rollback()
        logger.exception("Database error, transaction rolled back")
        raise InfrastructureError(str(exc.orig)) from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
