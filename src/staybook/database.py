"""SQLAlchemy engine and session setup."""

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from staybook.config import get_database_url


class Base(DeclarativeBase):
    pass


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False}  # SQLite needs this for multi-thread
    return {}


_url = get_database_url()
engine = create_engine(_url, echo=False, connect_args=_connect_args(_url))

SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def get_session() -> Session:
    """Create a new database session."""
    return SessionLocal()


def init_db() -> None:
    """Create all tables. Import models first so they register with Base."""
    # Import all models to ensure they are registered
    import staybook.models.booking  # noqa: F401
    import staybook.models.promo  # noqa: F401
    import staybook.models.property  # noqa: F401

    Base.metadata.create_all(bind=engine)
