from __future__ import annotations

from datetime import datetime

import pytest

from src.optimizer.config import Database, build_database
from src.optimizer.jobs.jobs_repository import JobRepository
from tests.helpers.clock import APPROVAL_WINDOW_SECONDS, Clock


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2026, 1, 5, 12, 0, 0))


@pytest.fixture
def database() -> Database:
    db = build_database("sqlite://")
    yield db
    db.engine.dispose()


@pytest.fixture
def session_factory(database: Database):
    return database.session_factory


@pytest.fixture
def repository(session_factory, clock: Clock) -> JobRepository:
    return JobRepository(
        session_factory,
        approval_window_seconds=APPROVAL_WINDOW_SECONDS,
        clock=clock.now,
    )
