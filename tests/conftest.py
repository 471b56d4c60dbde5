import os
from datetime import datetime

import pytest
from sqlalchemy import create_engine

from virtual_library import entities  # noqa: F401
from virtual_library.db import Base, engine_options, make_session_factory
from virtual_library.entities import UserRecord
from virtual_library.models import Identity
from virtual_library.service import CirculationService

NOW = datetime(2026, 1, 31, 10, 0)


class RecordingOutbox:
    def __init__(self):
        self.sent = []

    def submit(self, notification):
        self.sent.append(notification)


class FailingOutbox:
    def submit(self, notification):
        raise RuntimeError("smtp relay unreachable")


@pytest.fixture()
def engine(tmp_path):
    url = os.getenv("APP_TEST_DATABASE_URL") or f"sqlite:///{tmp_path / 'library.db'}"
    engine = create_engine(url, future=True, **engine_options(url))
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture()
def make_user(db_session):
    def _make(email: str) -> Identity:
        record = UserRecord(email=email, password_hash="not-a-real-hash")
        db_session.add(record)
        db_session.commit()
        return Identity(id=record.id, email=record.email)

    return _make


@pytest.fixture()
def outbox():
    return RecordingOutbox()


@pytest.fixture()
def failing_outbox():
    return FailingOutbox()


@pytest.fixture()
def now():
    return NOW


@pytest.fixture()
def service(db_session, outbox):
    return CirculationService(db_session, outbox, clock=lambda: NOW)


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"
