# backend/app/db.py
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import settings


class Base(DeclarativeBase):
    pass


engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    future=True,
)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


def get_db():
    """
    FastAPI dependency.

    Guarantees rollback on exceptions so a failed statement doesn't leave
    the session in an aborted transaction for later queries.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def session_scope(db: Session) -> Iterator[Session]:
    """
    Unit of work over an existing session.

    Everything written inside the block commits together or not at all;
    the original exception is re-raised after rollback.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
