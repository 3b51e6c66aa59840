import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker, declarative_base

from .config import get_settings

logger = logging.getLogger(__name__)

# Prefer explicit DATABASE_URL env var, otherwise a local SQLite file under data/
DATABASE_URL = get_settings().resolved_database_url()

logger.info("Using DATABASE_URL: %s", DATABASE_URL)

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores FOREIGN KEY clauses unless asked per connection
    if type(dbapi_connection).__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_db_and_tables():
    # Import model modules so every table is registered on Base.metadata
    from . import models, models_inventory, models_commercial  # noqa: F401
    Base.metadata.create_all(bind=engine)


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """
    Run a unit of work as one database transaction.

    Commits when the block finishes, rolls back and re-raises on any error so a
    failed transition never leaves partial state behind.
    """
    try:
        yield db
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.warning("Transaction rolled back: %s", exc)
        raise
