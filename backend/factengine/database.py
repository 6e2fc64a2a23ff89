"""
Fact Engine - Database Configuration
SQLAlchemy engine, session factory and declarative base
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from .config import DATABASE_URL


def build_engine(url: str):
    """Create an engine; SQLite connections may be shared across worker threads."""
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, echo=False, connect_args=connect_args)


# Create engine
engine = build_engine(DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for ORM models
Base = declarative_base()


def get_db():
    """Dependency for FastAPI - yields database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    """Dependency for FastAPI - session factory for work that needs its own sessions."""
    return SessionLocal


def init_db(bind=None):
    """Initialize database - create all tables."""
    from .models import db_models  # noqa: F401  registers tables on Base

    Base.metadata.create_all(bind=bind or engine)
