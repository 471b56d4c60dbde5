"""Engine and session plumbing shared by the API, the reminder job and Alembic."""

from collections.abc import Iterator
from typing import Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import get_settings

Base = declarative_base()

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Sessions are handed between the event loop and worker threads.
        return {"connect_args": {"check_same_thread": False}}
    # The circulation service's row locks assume READ COMMITTED.
    return {"pool_pre_ping": True, "isolation_level": "READ COMMITTED"}


def get_engine(url: Optional[str] = None) -> Engine:
    global _engine
    if _engine is None:
        url = url or get_settings().database_url
        _engine = create_engine(url, future=True, **engine_options(url))
    return _engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


def get_session() -> Iterator[Session]:
    """Request-scoped session; commits whatever the handler left pending."""
    with get_session_factory()() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


def init_db() -> None:
    from . import entities  # noqa: F401

    Base.metadata.create_all(bind=get_engine())


def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
