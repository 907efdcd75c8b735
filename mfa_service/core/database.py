"""
Database engine and session management
"""

from typing import Generator
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from mfa_service.core.config import settings


Base = declarative_base()


def create_db_engine(database_url: str = None) -> Engine:
    """
    Create SQLAlchemy engine

    SQLite (tests, local development) does not take pool sizing arguments.
    PostgreSQL gets a per-statement timeout so a stuck query cannot stall a request.
    """
    url = database_url or settings.DATABASE_URL

    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})

    return create_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_timeout=settings.DATABASE_POOL_TIMEOUT,
        pool_pre_ping=True,
        connect_args={"options": f"-c statement_timeout={settings.DATABASE_STATEMENT_TIMEOUT_MS}"},
    )


engine = create_db_engine()
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db() -> Generator[Session, None, None]:
    """Dependency function to get a database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create tables (development only, production uses migrations)"""
    # Import models so they register on Base.metadata
    from mfa_service import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def dispose_db() -> None:
    """Release pooled connections"""
    engine.dispose()
