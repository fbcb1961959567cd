from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from typing import Generator, Optional
import os

from margin_engine.core.config import settings
from margin_engine.core.logging import get_logger
from margin_engine.models.base_class import Base

logger = get_logger(__name__)

# Global variables for engine and session
engine = None
SessionLocal = None


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine for the given URL (SQLite gets thread-shareable connections)"""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(
        database_url,
        pool_pre_ping=True,
        echo=echo,
        connect_args=connect_args,
    )


def get_engine():
    """Get or create the database engine with the correct URL"""
    global engine
    if engine is None:
        database_url = os.getenv("DATABASE_URL") or settings.DATABASE_URL
        
        engine = build_engine(database_url, echo=settings.DB_ECHO)
        
        # Log the actual engine URL for verification
        logger.info(f"Engine created with URL components - User: {engine.url.username}, Host: {engine.url.host}, DB: {engine.url.database}")
    
    return engine


def get_session_maker():
    """Get or create the session maker"""
    global SessionLocal
    if SessionLocal is None:
        SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_engine(),
            expire_on_commit=False,
        )
    return SessionLocal


def get_db() -> Generator[Session, None, None]:
    """Provides a synchronous database session to a decorated function."""
    session_maker = get_session_maker()
    db = session_maker()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None):
    """Initializes the database and creates tables if they don't exist."""
    logger.info({"event": "Initializing database"})
    Base.metadata.create_all(bind=bind or get_engine())
    logger.info({"event": "Database initialized successfully"})
