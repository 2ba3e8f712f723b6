"""
Engine, session factory and schema bootstrap for the ledger database.

Services never open sessions themselves; callers pass one in as the unit of
work, or use ``managed_session()`` for a commit-or-rollback block.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine for the given URL with per-dialect pool settings"""
    if database_url.startswith("sqlite"):
        sqlite_engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )
        # SQLite ignores foreign keys unless asked per connection
        event.listen(sqlite_engine, "connect", _enable_sqlite_foreign_keys)
        return sqlite_engine

    return create_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,    # Drop dead connections before handing them out
        pool_recycle=1800,
        pool_timeout=30,
        echo=echo,
    )


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


engine = build_engine(Config.DATABASE_URL, echo=Config.DATABASE_ECHO)

SessionLocal = sessionmaker(bind=engine, autoflush=False)


@contextmanager
def managed_session():
    """Session that commits on success, rolls back on error and always closes"""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"❌ Ledger session rolled back: {e}")
        raise
    finally:
        session.close()


def create_tables(bind: Engine = None) -> bool:
    """Create missing ledger tables; returns False instead of raising on failure"""
    target = bind or engine
    try:
        Base.metadata.create_all(bind=target, checkfirst=True)
        table_names = sorted(inspect(target).get_table_names())
        logger.info(f"✅ Ledger schema ready ({len(table_names)} tables): {', '.join(table_names)}")
        return True
    except Exception as e:
        logger.error(f"❌ Could not create ledger tables: {e}")
        return False
