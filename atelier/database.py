"""
Database engines and session factory

The sync engine creates tables and serves the diagnostics endpoints; the
record store runs on its own asyncio engine.
"""

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from atelier.config import get_settings


def build_engine(database_url: str):
    """Create an engine; SQLite connections are shared with the event loop thread"""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args)


def build_async_engine(database_url: str, **kwargs) -> AsyncEngine:
    """Asyncio engine for the same database; plain SQLite URLs get the aiosqlite driver"""
    if database_url.startswith("sqlite://"):
        database_url = "sqlite+aiosqlite://" + database_url[len("sqlite://"):]
    return create_async_engine(database_url, **kwargs)


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency yielding a session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
