"""Engine and session factory for the review store.

SQLite (the default) gets WAL journaling, enforced foreign keys (report child
rows and the review trail cascade on delete) and a busy timeout, so reviewers
deciding at the same moment queue on the write lock instead of failing.
Other backends get a sized connection pool.
"""
import logging
from typing import Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session

from intelreview.config import settings

logger = logging.getLogger(__name__)


def build_engine(url: str) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(
            url,
            pool_pre_ping=True,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
        )

    engine = create_engine(url, pool_pre_ping=True, connect_args={"check_same_thread": False})
    in_memory = ":memory:" in url

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={int(settings.DB_BUSY_TIMEOUT_MS)}")
        cursor.close()

    return engine


engine = build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None) -> None:
    """Create all tables. Idempotent; existing tables are left untouched."""
    from intelreview.models import Base  # noqa: F401 -- registers every model on Base.metadata
    Base.metadata.create_all(bind=bind or engine)


def check_connection(bind: Optional[Engine] = None) -> bool:
    """True when the store answers a trivial query."""
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Database check failed: %s", exc)
        return False
    return True
