from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from app.core.config import settings
import logging

logger = logging.getLogger(__name__)


def enable_sqlite_savepoints(engine: Engine) -> None:
    """
    Let SQLAlchemy own BEGIN on pysqlite so SAVEPOINT/ROLLBACK TO behave.
    Only used by SQLite engines (tests and local tooling).
    """
    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create the application engine; SQLite URLs get a shared in-process pool."""
    if database_url.startswith("sqlite"):
        sqlite_engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo
        )
        enable_sqlite_savepoints(sqlite_engine)
        return sqlite_engine

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        echo=echo
    )


engine = build_engine(settings.database_url, echo=settings.DEBUG and settings.ENVIRONMENT == "development")

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Yield a request-scoped database session."""
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error(f"Database error: {e}")
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """
    Run a block as one unit of work.

    The outermost block commits on success and rolls the whole session back on
    any exception. Nested blocks (a service calling another service) run inside
    a SAVEPOINT, so an inner failure is undone before it propagates and the
    outer block decides what happens next.
    """
    depth = db.info.get("transaction_depth", 0)
    db.info["transaction_depth"] = depth + 1
    try:
        if depth == 0:
            try:
                yield db
                db.commit()
            except Exception:
                db.rollback()
                raise
        else:
            with db.begin_nested():
                yield db
    finally:
        db.info["transaction_depth"] = depth
