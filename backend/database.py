import logging
import os
import time
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from config import get_settings

logger = logging.getLogger(__name__)

# WAL lets the tick writer and the history readers work without serializing on fsync
SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA cache_size=10000",
    "PRAGMA temp_store=MEMORY",
)

Base = declarative_base()


def make_engine(url: str) -> Engine:
    is_sqlite = url.startswith("sqlite")
    connect_args = {"check_same_thread": False} if is_sqlite else {}
    engine = create_engine(url, connect_args=connect_args)

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            for pragma in SQLITE_PRAGMAS:
                cursor.execute(pragma)
            cursor.close()

    return engine


settings = get_settings()
os.makedirs(os.path.dirname(os.path.abspath(settings.db_path)), exist_ok=True)

engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None, retries: int = 3, delay: float = 2.0) -> bool:
    """
    Create tables, retrying a few times. Returns False when the database stays
    unusable; callers keep running without persistence.
    """
    # Registers the ORM tables on Base.metadata
    import models  # noqa: F401

    bind = bind or engine
    for attempt in range(1, retries + 1):
        try:
            Base.metadata.create_all(bind=bind)
            logger.info("Database initialized successfully")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database initialization attempt {attempt} failed: {e}")
            if attempt < retries:
                time.sleep(delay)
    return False
