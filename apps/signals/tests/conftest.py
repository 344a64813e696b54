"""Pytest configuration for signal job tests."""
import pytest
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from db import make_engine, make_session_factory
from models import Base


@pytest.fixture(scope="function")
def engine():
    """
    Fresh in-memory SQLite database per test. StaticPool keeps the single
    connection alive so every session sees the same schema and data.
    """
    test_engine = make_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture(scope="function")
def db(engine) -> Session:
    session = make_session_factory(engine)()
    yield session
    session.close()


@pytest.fixture(scope="function")
def file_factory(tmp_path):
    """Session factory over a SQLite file, for jobs that open several sessions from threads."""
    file_engine = make_engine(f"sqlite:///{tmp_path / 'signals.db'}")
    Base.metadata.create_all(bind=file_engine)
    yield make_session_factory(file_engine)
    file_engine.dispose()
