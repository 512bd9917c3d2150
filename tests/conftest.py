"""Pytest configuration and shared fixtures."""
import os

# Must be set before quizmaster.settings is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.pop("GEMINI_API_KEY", None)

import pytest
import pytest_asyncio
from sqlalchemy.orm import sessionmaker

from fakes import FakeQuestionSource, make_document
from quizmaster.db import Base, make_engine
from quizmaster.orchestrator import SessionOrchestrator
from quizmaster.persistence import SessionStore


@pytest.fixture
def fake_source():
    return FakeQuestionSource()


@pytest.fixture
def documents():
    return [make_document()]


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test."""
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, future=True)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return SessionStore(session_factory, key_prefix="test.session")


@pytest_asyncio.fixture
async def make_orchestrator(fake_source):
    """Build orchestrators that are closed (timers cancelled) after the test.

    The countdown ticks every 60s by default so it never fires unless a test
    asks for a fast one.
    """
    created = []

    def factory(**kwargs):
        kwargs.setdefault("batch_size", 5)
        kwargs.setdefault("tick_interval", 60.0)
        source = kwargs.pop("source", fake_source)
        orchestrator = SessionOrchestrator(source, **kwargs)
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        orchestrator.close()
