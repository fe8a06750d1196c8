from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import get_database_config


class Base(DeclarativeBase):
    """
    Declarative base shared by credentials, causas, folders, runs and the
    configuration documents.
    """


# One engine per process; the manager and each worker instance build their
# own from PJN_SYNC_DATABASE_URL on first use.
_engine = None
_SessionLocal: sessionmaker[Session] | None = None


def get_engine():
    global _engine
    if _engine is None:
        db_cfg = get_database_config()
        _engine = create_engine(db_cfg.database_url, future=True)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    global _SessionLocal
    if _SessionLocal is None:
        # Lease and run-guard updates are issued explicitly; nothing should
        # be flushed behind their back.
        _SessionLocal = sessionmaker(
            bind=get_engine(),
            autoflush=False,
            autocommit=False,
            future=True,
        )
    return _SessionLocal


@contextmanager
def get_session() -> Iterator[Session]:
    """
    One unit of database work: a lease claim, a page of reconciled causas,
    a run transition.

    The block's changes are committed together when it exits normally and
    discarded if it raises.
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def reset_engine() -> None:
    """
    Forget the cached engine so the next call re-reads PJN_SYNC_DATABASE_URL.
    """
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


__all__ = ["Base", "get_engine", "get_session", "get_session_factory", "reset_engine"]
