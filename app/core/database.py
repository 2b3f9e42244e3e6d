"""
Database configuration and session management.

All lifecycle tables live in one shared store; the lease, queue and ledger
tables are the only coordination substrate between job processes.
"""
import os
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

from app.core.config import settings


def _create_engine(database_url: str) -> Engine:
    echo = os.getenv("SQL_ECHO", "false").lower() == "true"
    if database_url.startswith("sqlite"):
        # Local development: SQLite does not support QueuePool sizing options
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=echo,
        )
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,  # Verify connections before using
        echo=echo,
    )


DATABASE_URL = settings.DATABASE_URL

engine = _create_engine(DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency that provides a database session.

    Usage in FastAPI:
    ```python
    @router.get("/endpoint")
    def endpoint(db: Session = Depends(get_db)):
        # Use db here
        pass
    ```
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create lifecycle tables that don't exist yet."""
    from app.models.models import Base
    Base.metadata.create_all(bind=engine, checkfirst=True)
