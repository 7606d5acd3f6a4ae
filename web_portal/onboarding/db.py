from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from onboarding.core.settings import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


_engine = None


def _redact(url: str) -> str:
    return url.split("@")[0] if "@" in url else url


def normalize_db_url(url: str) -> str:
    url = (url or "").strip()
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql://") and "+psycopg" not in url:
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def get_engine():
    global _engine
    if _engine is None:
        url = normalize_db_url(settings.DATABASE_URL)
        if not url:
            raise RuntimeError("Missing DATABASE_URL")
        logger.debug("Creating database engine for URL: %s", _redact(url))
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        _engine = create_engine(url, pool_pre_ping=True, connect_args=connect_args)
    return _engine


SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)


def get_db() -> Iterator[Session]:
    """Request-scoped session for FastAPI dependencies."""
    db = SessionLocal(bind=get_engine())
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for background jobs; the caller's service functions commit."""
    db = SessionLocal(bind=get_engine())
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
