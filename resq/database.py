"""
Database connection for ResQ
"""

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from resq.config import DATABASE_URL

Base = declarative_base()


def build_engine(url: str) -> Engine:
    """Create an engine with pool settings suited to the backend."""
    if url.startswith("sqlite"):
        # FastAPI runs sync endpoints in a threadpool
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_size=10,           # Base connections to keep open
        max_overflow=20,        # Additional connections when busy (30 total max)
        pool_timeout=30,        # Seconds to wait for connection before error
        pool_recycle=1800,      # Recycle connections after 30 min (prevents stale)
        pool_pre_ping=True,     # Test connections before using (handles dropped connections)
    )


def build_sessionmaker(bind: Engine) -> sessionmaker:
    return sessionmaker(
        bind=bind, autocommit=False, autoflush=False, expire_on_commit=False
    )


engine = build_engine(DATABASE_URL)
SessionLocal = build_sessionmaker(engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(factory: sessionmaker = None) -> Iterator[Session]:
    """One transaction: commit on success, rollback on any exception."""
    session: Session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def is_postgres(session: Session) -> bool:
    return session.get_bind().dialect.name == "postgresql"
